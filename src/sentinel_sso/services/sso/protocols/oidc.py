"""
OpenID Connect providers: Okta and any standards-compliant issuer.

Endpoints left out of the provider configuration are resolved from the
issuer's `/.well-known/openid-configuration` document.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from sentinel_sso.exceptions import ConfigurationError, TokenExchangeFailedError
from ..schemas import AuthSession, ConnectionTestResult, ProviderConfig, ProviderType
from .base import require_https
from .oauth import OAuth2Protocol

logger = logging.getLogger(__name__)


def discovery_url_for(issuer_url: str) -> str:
    return f"{issuer_url.rstrip('/')}/.well-known/openid-configuration"


class OidcProtocol(OAuth2Protocol):
    provider_types = (ProviderType.OIDC,)

    @classmethod
    def validate_config(cls, provider: ProviderConfig) -> None:
        if not provider.client_id:
            raise ConfigurationError(
                "client_id is required", details={"field": "client_id"}
            )
        if not provider.client_secret_encrypted:
            raise ConfigurationError(
                "client_secret is required", details={"field": "client_secret"}
            )
        require_https(provider.issuer_url, "issuer_url")

    #        Discovery
    # -------------------------------
    async def discovery_document(self) -> Dict[str, Any]:
        url = discovery_url_for(self.provider.issuer_url)
        cached = self.context.documents.get(url)
        if cached is not None:
            return cached

        try:
            response = await self.context.http.get(
                url, timeout=self.settings.discovery_timeout_seconds
            )
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "OIDC discovery failed",
                extra={"provider_id": str(self.provider.id), "error": type(e).__name__},
            )
            raise TokenExchangeFailedError("Could not reach the identity provider")

        self.context.documents.put(url, document)
        return document

    async def _resolve(self, configured: Optional[str], key: str) -> Optional[str]:
        if configured:
            return configured
        document = await self.discovery_document()
        return document.get(key)

    async def authorization_endpoint(self) -> str:
        url = await self._resolve(
            self.provider.authorization_url, "authorization_endpoint"
        )
        if not url:
            raise ConfigurationError(
                "Identity provider does not publish an authorization endpoint",
                status_code=502,
            )
        return url

    async def token_endpoint(self) -> str:
        url = await self._resolve(self.provider.token_url, "token_endpoint")
        if not url:
            raise TokenExchangeFailedError("Identity provider does not publish a token endpoint")
        return url

    async def userinfo_endpoint(self) -> Optional[str]:
        return await self._resolve(self.provider.userinfo_url, "userinfo_endpoint")

    async def jwks_endpoint(self) -> Optional[str]:
        return await self._resolve(self.provider.jwks_url, "jwks_uri")

    def authorization_extras(self, session: AuthSession) -> Dict[str, Any]:
        if session.login_hint:
            return {"login_hint": session.login_hint}
        return {}

    async def test_connection(self) -> ConnectionTestResult:
        return await self._probe_discovery(
            discovery_url_for(self.provider.issuer_url),
            "Successfully connected to OIDC provider",
        )


#       OKTA
# ------------------------------

OKTA_DOMAIN_SUFFIXES = (".okta.com", ".oktapreview.com")


def is_okta_domain(domain: Optional[str]) -> bool:
    return bool(domain) and domain.lower().endswith(OKTA_DOMAIN_SUFFIXES)


class OktaProtocol(OidcProtocol):
    provider_types = (ProviderType.OKTA,)
    endpoint_metadata_keys = ("okta_domain", "authorization_server_id")
    derived_endpoint_fields = (
        "issuer_url",
        "authorization_url",
        "token_url",
        "userinfo_url",
        "jwks_url",
        "logout_url",
    )

    @classmethod
    def apply_defaults(cls, provider: ProviderConfig) -> ProviderConfig:
        domain = provider.metadata.get("okta_domain")
        if not domain:
            return provider
        domain = domain.lower().removeprefix("https://").rstrip("/")
        server = provider.metadata.get("authorization_server_id") or "default"
        base = f"https://{domain}/oauth2/{server}"
        defaults = {
            "issuer_url": base,
            "authorization_url": f"{base}/v1/authorize",
            "token_url": f"{base}/v1/token",
            "userinfo_url": f"{base}/v1/userinfo",
            "jwks_url": f"{base}/v1/keys",
            "logout_url": f"{base}/v1/logout",
        }
        return provider.model_copy(
            update={k: v for k, v in defaults.items() if not getattr(provider, k)}
        )

    @classmethod
    def validate_config(cls, provider: ProviderConfig) -> None:
        domain = provider.metadata.get("okta_domain")
        if not domain:
            raise ConfigurationError(
                "okta_domain is required", details={"field": "okta_domain"}
            )
        if not is_okta_domain(domain.removeprefix("https://").rstrip("/")):
            raise ConfigurationError(
                "Invalid Okta domain", details={"field": "okta_domain"}
            )
        super().validate_config(provider)

    def introspection_endpoint(self) -> str:
        return f"{self.provider.issuer_url.rstrip('/')}/v1/introspect"

    async def introspect_token(self, access_token: str) -> Optional[bool]:
        try:
            response = await self.context.http.post(
                self.introspection_endpoint(),
                data={"token": access_token, "token_type_hint": "access_token"},
                auth=(
                    self.provider.client_id,
                    self.context.cipher.decrypt(self.provider.client_secret_encrypted),
                ),
                headers={"Accept": "application/json"},
                timeout=self.settings.http_timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Okta token introspection failed",
                extra={"provider_id": str(self.provider.id), "error": type(e).__name__},
            )
            return None
        if not isinstance(body, dict):
            return None
        return body.get("active") is True

    async def test_connection(self) -> ConnectionTestResult:
        domain = (self.provider.metadata.get("okta_domain") or "").removeprefix(
            "https://"
        ).rstrip("/")
        if not is_okta_domain(domain):
            return ConnectionTestResult(success=False, message="Invalid Okta domain")
        return await self._probe_discovery(
            discovery_url_for(self.provider.issuer_url),
            "Successfully connected to Okta",
            domain=domain,
        )
