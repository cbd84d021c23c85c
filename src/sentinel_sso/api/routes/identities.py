"""
Linked identity routes: listing and unlinking the caller's identities, and
the admin / SCIM webhook entry points that revoke an identity.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from sentinel_sso.api.dependencies import AdminUserDep, CurrentUserDep, SSOServiceDep
from sentinel_sso.api.schemas import (
    DeprovisionRequest,
    DeprovisionResponse,
    IdentityResponse,
    ScimDeprovisionRequest,
)
from sentinel_sso.services.auth import ADMIN_ROLES
from sentinel_sso.services.sso import SSOService


router = APIRouter()


def _check_provider_tenant(sso: SSOService, tenant_id: str, provider_id: UUID) -> None:
    sso.registry.get_for_tenant(tenant_id, provider_id)


@router.get("/identities", response_model=List[IdentityResponse])
async def list_my_identities(user: CurrentUserDep, sso: SSOServiceDep):
    return sso.list_identities(UUID(user.user_id))


@router.delete("/identities/{identity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlink_identity(identity_id: UUID, user: CurrentUserDep, sso: SSOServiceDep):
    """Users may unlink their own identities; tenant admins any in their tenant."""
    identity = sso.provisioner.get_identity(identity_id)
    is_owner = str(identity.user_id) == user.user_id
    is_tenant_admin = (
        user.role.lower() in ADMIN_ROLES and identity.tenant_id == user.tenant_id
    )
    if not (is_owner or is_tenant_admin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot unlink another user's identity",
        )
    await sso.unlink_identity(identity_id, actor_id=user.user_id)


@router.post("/identities/deprovision", response_model=DeprovisionResponse)
async def deprovision_identity(
    body: DeprovisionRequest, sso: SSOServiceDep, admin: AdminUserDep
):
    _check_provider_tenant(sso, admin.tenant_id, body.provider_id)
    identity = sso.deprovision_user(
        body.provider_id,
        body.external_subject_id,
        body.reason,
        revoked_by=admin.user_id,
    )
    return DeprovisionResponse(
        deprovisioned=identity is not None,
        identity_id=identity.id if identity else None,
    )


@router.post("/scim/deprovision", response_model=DeprovisionResponse)
async def scim_deprovision(
    body: ScimDeprovisionRequest, sso: SSOServiceDep, admin: AdminUserDep
):
    _check_provider_tenant(sso, admin.tenant_id, body.provider_id)
    identity = sso.process_scim_deprovision(
        body.provider_id, body.scim_user_id, body.action
    )
    return DeprovisionResponse(
        deprovisioned=identity is not None,
        identity_id=identity.id if identity else None,
    )
