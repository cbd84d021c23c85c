"""
Provider administration routes.

Tenant admins register, edit, activate and test identity providers for
their own tenant. Client secrets are accepted in clear and only ever
returned masked.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, status

from sentinel_sso.api.dependencies import AdminUserDep, SSOServiceDep
from sentinel_sso.api.schemas import ProviderDeleteResponse, ProviderResponse
from sentinel_sso.services.sso import SSOService
from sentinel_sso.services.sso.schemas import (
    ConnectionTestResult,
    ProviderConfig,
    ProviderCreate,
    ProviderUpdate,
)


router = APIRouter()


def _respond(sso: SSOService, provider: ProviderConfig) -> ProviderResponse:
    return ProviderResponse.from_provider(provider, sso.registry.masked_secret(provider))


@router.get("", response_model=List[ProviderResponse])
async def list_providers(sso: SSOServiceDep, admin: AdminUserDep):
    return [
        _respond(sso, provider)
        for provider in sso.registry.list_for_tenant(admin.tenant_id)
    ]


@router.post("", response_model=ProviderResponse, status_code=status.HTTP_201_CREATED)
async def create_provider(
    params: ProviderCreate, sso: SSOServiceDep, admin: AdminUserDep
):
    provider = sso.create_provider_config(
        admin.tenant_id, params, actor_id=str(admin.user_id)
    )
    return _respond(sso, provider)


@router.get("/{provider_id}", response_model=ProviderResponse)
async def get_provider(provider_id: UUID, sso: SSOServiceDep, admin: AdminUserDep):
    return _respond(sso, sso.registry.get_for_tenant(admin.tenant_id, provider_id))


@router.patch("/{provider_id}", response_model=ProviderResponse)
async def update_provider(
    provider_id: UUID,
    changes: ProviderUpdate,
    sso: SSOServiceDep,
    admin: AdminUserDep,
):
    sso.registry.get_for_tenant(admin.tenant_id, provider_id)
    provider = sso.registry.update(provider_id, changes, actor_id=str(admin.user_id))
    return _respond(sso, provider)


@router.delete("/{provider_id}", response_model=ProviderDeleteResponse)
async def delete_provider(provider_id: UUID, sso: SSOServiceDep, admin: AdminUserDep):
    sso.registry.get_for_tenant(admin.tenant_id, provider_id)
    removed = sso.registry.delete(provider_id, actor_id=str(admin.user_id))
    return ProviderDeleteResponse(provider_id=provider_id, deleted_identities=removed)


#            LIFECYCLE
# --------------------------------------------------


@router.post("/{provider_id}/activate", response_model=ProviderResponse)
async def activate_provider(
    provider_id: UUID, sso: SSOServiceDep, admin: AdminUserDep
):
    sso.registry.get_for_tenant(admin.tenant_id, provider_id)
    return _respond(sso, sso.registry.activate(provider_id, actor_id=str(admin.user_id)))


@router.post("/{provider_id}/deactivate", response_model=ProviderResponse)
async def deactivate_provider(
    provider_id: UUID, sso: SSOServiceDep, admin: AdminUserDep
):
    sso.registry.get_for_tenant(admin.tenant_id, provider_id)
    return _respond(
        sso, sso.registry.deactivate(provider_id, actor_id=str(admin.user_id))
    )


@router.post("/{provider_id}/default", response_model=ProviderResponse)
async def set_default_provider(
    provider_id: UUID, sso: SSOServiceDep, admin: AdminUserDep
):
    sso.registry.get_for_tenant(admin.tenant_id, provider_id)
    return _respond(
        sso, sso.registry.set_default(provider_id, actor_id=str(admin.user_id))
    )


@router.post("/{provider_id}/test", response_model=ConnectionTestResult)
async def test_provider(provider_id: UUID, sso: SSOServiceDep, admin: AdminUserDep):
    sso.registry.get_for_tenant(admin.tenant_id, provider_id)
    return await sso.test_provider_connection(provider_id)
