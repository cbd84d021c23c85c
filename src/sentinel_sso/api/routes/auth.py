"""
Sign-in routes: start a federated login, finish it on the OAuth 2.0 / OIDC
callback, and Home Realm Discovery for login pages.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Query, Request

from sentinel_sso.api.dependencies import (
    RequestContextDep,
    SettingsDep,
    SSOServiceDep,
)
from sentinel_sso.api.schemas import (
    AuthMethodResponse,
    CallbackResponse,
    DiscoverRequest,
    DiscoverResponse,
    InitiateRequest,
    InitiateResponse,
    ProviderSummary,
)
from sentinel_sso.config import AppSettings
from sentinel_sso.services.auth import create_access_token
from sentinel_sso.services.sso.schemas import CallbackResult, ProviderConfig


router = APIRouter()


def issue_platform_token(result: CallbackResult, settings: AppSettings) -> CallbackResponse:
    """Mint the platform access token for a completed sign-in."""
    access_token = create_access_token(
        data={
            "sub": result.user.email,
            "user_id": str(result.user.id),
            "tenant_id": result.tenant_id,
            "role": result.assigned_role,
            "provider_id": str(result.provider_id),
        },
        settings=settings,
    )
    return CallbackResponse(
        access_token=access_token,
        expires_in=settings.security.access_token_expire_minutes * 60,
        user_id=result.user.id,
        email=result.user.email,
        tenant_id=result.tenant_id,
        provider_id=result.provider_id,
        role=result.assigned_role,
        is_new_user=result.is_new_user,
        return_url=result.return_url,
    )


def _summary(provider: Optional[ProviderConfig]) -> Optional[ProviderSummary]:
    if provider is None:
        return None
    return ProviderSummary(
        id=provider.id,
        name=provider.name,
        provider_type=provider.provider_type,
        is_default=provider.is_default,
    )


@router.post("/auth/initiate", response_model=InitiateResponse)
async def initiate_login(
    body: InitiateRequest,
    request: Request,
    sso: SSOServiceDep,
    context: RequestContextDep,
):
    """
    Start a federated login and return the IdP URL the browser should be
    sent to. OAuth 2.0 / OIDC logins come back on /callback unless the
    caller supplies its own redirect_uri.
    """
    redirect_uri = body.redirect_uri or str(request.url_for("sso_callback"))
    auth_request = await sso.generate_authorization_url(
        tenant_id=body.tenant_id,
        provider_id=body.provider_id,
        redirect_uri=redirect_uri,
        return_url=body.return_url,
        login_hint=body.login_hint,
        **context.to_dict(),
    )
    return InitiateResponse(
        authorization_url=auth_request.url,
        state=auth_request.state,
        relay_state=auth_request.relay_state,
    )


@router.get("/callback", response_model=CallbackResponse, name="sso_callback")
async def sso_callback(
    sso: SSOServiceDep,
    settings: SettingsDep,
    context: RequestContextDep,
    state: str = Query(..., min_length=1),
    code: Optional[str] = None,
    error: Optional[str] = None,
    provider_id: Optional[UUID] = None,
):
    result = await sso.handle_callback(
        state=state,
        code=code,
        provider_id=provider_id,
        idp_error=error,
        **context.to_dict(),
    )
    return issue_platform_token(result, settings)


#            HOME REALM DISCOVERY
# --------------------------------------------------


@router.post("/discover", response_model=DiscoverResponse)
async def discover_provider(body: DiscoverRequest, sso: SSOServiceDep):
    provider = sso.find_provider_by_domain(body.tenant_id, body.email)
    return DiscoverResponse(sso_available=provider is not None, provider=_summary(provider))


@router.post("/check-auth-method", response_model=AuthMethodResponse)
async def check_auth_method(body: DiscoverRequest, sso: SSOServiceDep):
    check = sso.check_auth_method(body.email, body.tenant_id)
    return AuthMethodResponse(
        allow_local_auth=check.allow_local_auth,
        sso_required=check.sso_required,
        provider=_summary(check.provider),
    )


@router.get("/available-providers", response_model=List[ProviderSummary])
async def available_providers(
    sso: SSOServiceDep, tenant_id: str = Query(..., min_length=1)
):
    return sso.discovery.available_providers(tenant_id)
