from fastapi import APIRouter

from .auth import router as auth_router
from .domains import router as domains_router
from .health import router as health_router
from .identities import router as identities_router
from .providers import router as providers_router
from .saml import router as saml_router

health_router_root = health_router

sso_router = APIRouter(prefix="/api/sso")

sso_router.include_router(providers_router, prefix="/providers", tags=["Providers"])
sso_router.include_router(domains_router, prefix="/domains", tags=["Domains"])
sso_router.include_router(saml_router, prefix="/saml", tags=["SAML"])
sso_router.include_router(auth_router, tags=["Sign-in"])
sso_router.include_router(identities_router, tags=["Identities"])
