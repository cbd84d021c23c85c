from typing import List

from fastapi import APIRouter, status

from sentinel_sso.api.dependencies import AdminUserDep, SSOServiceDep
from sentinel_sso.api.schemas import DomainMappingRequest, DomainMappingResponse


router = APIRouter()


@router.get("", response_model=List[DomainMappingResponse])
async def list_domain_mappings(sso: SSOServiceDep, admin: AdminUserDep):
    return sso.discovery.list_domain_mappings(admin.tenant_id)


@router.post(
    "", response_model=DomainMappingResponse, status_code=status.HTTP_201_CREATED
)
async def add_domain_mapping(
    body: DomainMappingRequest, sso: SSOServiceDep, admin: AdminUserDep
):
    """Map an email domain to a provider. New mappings start unverified."""
    return sso.discovery.add_domain_mapping(
        admin.tenant_id, body.domain, body.provider_id
    )


@router.post("/{domain}/verify", response_model=DomainMappingResponse)
async def verify_domain_mapping(domain: str, sso: SSOServiceDep, admin: AdminUserDep):
    return sso.discovery.verify_domain_mapping(admin.tenant_id, domain)


@router.delete("/{domain}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_domain_mapping(domain: str, sso: SSOServiceDep, admin: AdminUserDep):
    sso.discovery.remove_domain_mapping(admin.tenant_id, domain)
