"""
SAML 2.0 service provider routes: SP metadata, SP-initiated login through
the HTTP-Redirect binding, the HTTP-POST Assertion Consumer Service and
single logout.
"""

from typing import Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Form, Query, Request, Response
from fastapi.responses import RedirectResponse

from sentinel_sso.api.dependencies import (
    AdminUserDep,
    CurrentUserDep,
    RequestContextDep,
    SettingsDep,
    SSOServiceDep,
)
from sentinel_sso.api.schemas import CallbackResponse
from sentinel_sso.exceptions import IdentityNotFoundError
from .auth import issue_platform_token


router = APIRouter()


@router.get("/metadata")
async def sp_metadata(sso: SSOServiceDep):
    return Response(content=sso.generate_sp_metadata(), media_type="application/xml")


@router.get("/login")
async def saml_login(
    sso: SSOServiceDep,
    context: RequestContextDep,
    tenant_id: str = Query(..., min_length=1),
    provider_id: UUID = Query(...),
    return_url: Optional[str] = None,
    login_hint: Optional[str] = None,
):
    auth_request = await sso.generate_authorization_url(
        tenant_id=tenant_id,
        provider_id=provider_id,
        return_url=return_url,
        login_hint=login_hint,
        **context.to_dict(),
    )
    return RedirectResponse(auth_request.url, status_code=302)


@router.post("/acs", response_model=CallbackResponse)
async def assertion_consumer_service(
    sso: SSOServiceDep,
    settings: SettingsDep,
    context: RequestContextDep,
    saml_response: str = Form(..., alias="SAMLResponse"),
    relay_state: str = Form(..., alias="RelayState"),
):
    result = await sso.handle_saml_response(
        relay_state=relay_state,
        saml_response=saml_response,
        **context.to_dict(),
    )
    return issue_platform_token(result, settings)


@router.post("/logout")
async def saml_logout(
    user: CurrentUserDep,
    sso: SSOServiceDep,
    relay_state: Optional[str] = Body(default=None, embed=True),
) -> Dict[str, str]:
    """Build the IdP logout redirect for the signed-in user's SAML identity."""
    if user.provider_id is None:
        raise IdentityNotFoundError()
    provider_id = UUID(user.provider_id)
    identity = next(
        (
            i
            for i in sso.list_identities(UUID(user.user_id))
            if i.provider_id == provider_id
        ),
        None,
    )
    if identity is None:
        raise IdentityNotFoundError()

    url = sso.generate_logout_request(
        provider_id,
        name_id=identity.external_subject_id,
        session_index=identity.profile.get("session_index"),
        relay_state=relay_state,
    )
    return {"logout_url": url}


@router.get("/slo")
async def single_logout_service(
    request: Request, sso: SSOServiceDep, context: RequestContextDep
):
    """HTTP-Redirect SingleLogoutService advertised in the SP metadata."""
    result = await sso.handle_saml_logout(request.url.query, **context.to_dict())
    if result.redirect_url:
        return RedirectResponse(result.redirect_url, status_code=302)
    return {"status": "logged_out", "provider_id": str(result.provider_id)}


@router.post("/idp-metadata")
async def parse_idp_metadata(
    request: Request, admin: AdminUserDep, sso: SSOServiceDep
) -> Dict[str, Optional[str]]:
    """Extract entity id, SSO/SLO URLs and signing certificate from IdP metadata."""
    return sso.parse_idp_metadata(await request.body())
