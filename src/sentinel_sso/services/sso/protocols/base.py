"""
Common capability shared by every federation protocol variant.

A variant is chosen once per provider by build_protocol() and then drives
both halves of the login: building the authorization request for a new
AuthSession, and turning the IdP's callback into an ExternalProfile.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from sentinel_sso.config import SSOSettings
from sentinel_sso.exceptions import ConfigurationError
from sentinel_sso.services.crypto import SecretCipher
from ..schemas import (
    AuthorizationRequest,
    AuthSession,
    ConnectionTestResult,
    ExternalProfile,
    ProviderConfig,
    ProviderType,
    TokenSet,
)

logger = logging.getLogger(__name__)


class DocumentCache:
    """Small TTL cache for discovery documents and JWKS, keyed by URL."""

    def __init__(self, ttl: timedelta = timedelta(hours=1)):
        self._ttl = ttl
        self._entries: Dict[str, Tuple[datetime, Dict[str, Any]]] = {}

    def get(self, url: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(url)
        if entry is None:
            return None
        stored_at, document = entry
        if datetime.now(timezone.utc) - stored_at > self._ttl:
            del self._entries[url]
            return None
        return document

    def put(self, url: str, document: Dict[str, Any]) -> None:
        self._entries[url] = (datetime.now(timezone.utc), document)

    def invalidate(self, url: str) -> None:
        self._entries.pop(url, None)


@dataclass
class ProtocolContext:
    """Process-wide collaborators handed to every protocol instance."""

    http: httpx.AsyncClient
    cipher: SecretCipher
    settings: SSOSettings
    documents: DocumentCache = field(default_factory=DocumentCache)


@dataclass
class Challenge:
    state: str
    nonce: str
    code_verifier: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


@dataclass
class CallbackPayload:
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    saml_response: Optional[str] = None
    relay_state: Optional[str] = None


def append_query(url: str, params: Dict[str, Any]) -> str:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    separator = "&" if urlparse(url).query else "?"
    return f"{url}{separator}{query}"


def require_https(url: Optional[str], field_name: str) -> None:
    if not url:
        raise ConfigurationError(
            f"{field_name} is required", details={"field": field_name}
        )
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ConfigurationError(
            f"{field_name} must be an https URL", details={"field": field_name}
        )


class SSOProtocol(ABC):
    provider_types: ClassVar[Tuple[ProviderType, ...]] = ()
    # Metadata keys a family builds its endpoints from, and the fields built
    endpoint_metadata_keys: ClassVar[Tuple[str, ...]] = ()
    derived_endpoint_fields: ClassVar[Tuple[str, ...]] = ()

    def __init__(self, provider: ProviderConfig, context: ProtocolContext):
        self.provider = provider
        self.context = context

    @property
    def settings(self) -> SSOSettings:
        return self.context.settings

    #        Configuration
    # -------------------------------
    @classmethod
    def apply_defaults(cls, provider: ProviderConfig) -> ProviderConfig:
        """Fill in well-known endpoints for the provider family."""
        return provider

    @classmethod
    @abstractmethod
    def validate_config(cls, provider: ProviderConfig) -> None:
        """Raise ConfigurationError when required protocol fields are missing."""

    #        Login flow
    # -------------------------------
    @abstractmethod
    def create_challenge(self) -> Challenge: ...

    @abstractmethod
    async def build_authorization_request(
        self, session: AuthSession
    ) -> AuthorizationRequest: ...

    @abstractmethod
    async def complete(
        self, session: AuthSession, payload: CallbackPayload
    ) -> Tuple[ExternalProfile, TokenSet]: ...

    #        Linked tokens
    # -------------------------------
    async def introspect_token(self, access_token: str) -> Optional[bool]:
        """Whether the IdP still considers the token active, or None if it cannot tell."""
        return None

    async def revoke_token(self, token: str) -> bool:
        return False

    #        Diagnostics
    # -------------------------------
    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult: ...

    async def _probe_discovery(
        self, discovery_url: str, success_message: str, **details
    ) -> ConnectionTestResult:
        try:
            response = await self.context.http.get(
                discovery_url, timeout=self.settings.discovery_timeout_seconds
            )
        except httpx.TimeoutException:
            return ConnectionTestResult(success=False, message="Connection timed out")
        except httpx.HTTPError as e:
            logger.info(
                "Discovery probe failed",
                extra={"provider_id": str(self.provider.id), "error": str(e)},
            )
            return ConnectionTestResult(
                success=False,
                message="Connection test failed",
                details={"error": "Request error"},
            )

        if response.status_code != 200:
            return ConnectionTestResult(
                success=False,
                message="Failed to reach the OIDC discovery endpoint",
                details={"status_code": response.status_code},
            )
        try:
            document = response.json()
        except ValueError:
            return ConnectionTestResult(
                success=False, message="Discovery endpoint returned invalid JSON"
            )

        return ConnectionTestResult(
            success=True,
            message=success_message,
            details={
                "issuer": document.get("issuer"),
                "authorization_endpoint": document.get("authorization_endpoint"),
                **details,
            },
        )

    #        Claim mapping
    # -------------------------------
    def claim_name(self, field_name: str, default: str) -> str:
        return self.provider.claim_mappings.get(field_name) or default
