"""
OAuth 2.0 authorization-code login with PKCE, for Google and Microsoft.

The token endpoint response is trusted only after the ID token's signature
has been checked against the provider JWKS and its iss/aud/nonce/exp claims
validated. Missing profile claims are filled in from the userinfo endpoint.
"""

import hmac
import logging
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx
from authlib.jose import JoseError, JsonWebKey, JsonWebToken

from sentinel_sso.exceptions import (
    ConfigurationError,
    DomainNotAllowedError,
    InvalidAssertionError,
    InvalidIssuerError,
    TokenExchangeFailedError,
)
from ..challenges import generate_nonce, generate_pkce_pair, generate_state
from ..schemas import (
    AuthorizationRequest,
    AuthSession,
    ConnectionTestResult,
    ExternalProfile,
    ProviderConfig,
    ProviderType,
    TokenSet,
    utcnow,
)
from .base import CallbackPayload, Challenge, SSOProtocol, append_query

logger = logging.getLogger(__name__)

_id_token_jwt = JsonWebToken(["RS256", "RS384", "RS512", "PS256", "ES256", "ES384"])


class OAuth2Protocol(SSOProtocol):
    """Authorization-code flow shared by every OAuth/OIDC provider family."""

    #        Configuration
    # -------------------------------
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
        for field_name in ("authorization_url", "token_url"):
            if not getattr(provider, field_name):
                raise ConfigurationError(
                    f"{field_name} is required", details={"field": field_name}
                )

    #        Authorization request
    # -------------------------------
    def create_challenge(self) -> Challenge:
        pkce = generate_pkce_pair()
        return Challenge(
            state=generate_state(),
            nonce=generate_nonce(),
            code_verifier=pkce.code_verifier,
            code_challenge=pkce.code_challenge,
            code_challenge_method=pkce.method,
        )

    def authorization_extras(self, session: AuthSession) -> Dict[str, Any]:
        return {}

    async def authorization_endpoint(self) -> str:
        return self.provider.authorization_url

    async def build_authorization_request(
        self, session: AuthSession
    ) -> AuthorizationRequest:
        params = {
            "client_id": self.provider.client_id,
            "redirect_uri": session.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.provider.scopes),
            "state": session.state,
            "nonce": session.nonce,
            "code_challenge": session.code_challenge,
            "code_challenge_method": session.code_challenge_method,
        }
        params.update(self.authorization_extras(session))

        url = append_query(await self.authorization_endpoint(), params)
        return AuthorizationRequest(url=url, state=session.state, session_id=session.id)

    #        Callback
    # -------------------------------
    async def complete(
        self, session: AuthSession, payload: CallbackPayload
    ) -> Tuple[ExternalProfile, TokenSet]:
        if not payload.code:
            raise InvalidAssertionError("Authorization code is missing")

        tokens = await self.exchange_code(
            payload.code, payload.redirect_uri or session.redirect_uri, session
        )

        claims: Dict[str, Any] = {}
        if tokens.id_token:
            claims = await self.verify_id_token(tokens.id_token, session)

        if tokens.access_token and self._needs_userinfo(claims):
            userinfo = await self.fetch_userinfo(tokens.access_token)
            if claims.get("sub") and userinfo.get("sub") not in (None, claims["sub"]):
                raise InvalidAssertionError("Userinfo subject does not match ID token")
            claims = {**userinfo, **claims}

        profile = self.map_profile(claims)
        self.enforce_account_policy(claims, profile)
        return profile, tokens

    async def token_endpoint(self) -> str:
        return self.provider.token_url

    async def exchange_code(
        self, code: str, redirect_uri: str, session: AuthSession
    ) -> TokenSet:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.provider.client_id,
            "client_secret": self.context.cipher.decrypt(
                self.provider.client_secret_encrypted
            ),
        }
        if session.code_verifier:
            data["code_verifier"] = session.code_verifier

        try:
            response = await self.context.http.post(
                await self.token_endpoint(),
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.settings.http_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Token request failed",
                extra={"provider_id": str(self.provider.id), "error": type(e).__name__},
            )
            raise TokenExchangeFailedError()

        if response.status_code >= 400:
            error_code = None
            try:
                error_code = response.json().get("error")
            except ValueError:
                pass
            logger.warning(
                "Token endpoint rejected authorization code",
                extra={
                    "provider_id": str(self.provider.id),
                    "status_code": response.status_code,
                    "error": error_code,
                },
            )
            raise TokenExchangeFailedError(details={"status_code": response.status_code})

        try:
            body = response.json()
        except ValueError:
            raise TokenExchangeFailedError("Identity provider returned an invalid response")

        if not body.get("access_token") and not body.get("id_token"):
            raise TokenExchangeFailedError("Identity provider returned no tokens")

        expires_at = None
        if body.get("expires_in") is not None:
            try:
                expires_at = utcnow() + timedelta(seconds=float(body["expires_in"]))
            except (TypeError, ValueError, OverflowError):
                raise TokenExchangeFailedError(
                    "Identity provider returned an invalid token lifetime"
                )

        return TokenSet(
            access_token=body.get("access_token"),
            refresh_token=body.get("refresh_token"),
            id_token=body.get("id_token"),
            token_type=body.get("token_type"),
            expires_at=expires_at,
            scope=body.get("scope"),
        )

    #        ID token verification
    # -------------------------------
    def expected_issuers(self) -> List[str]:
        return [self.provider.issuer_url] if self.provider.issuer_url else []

    async def jwks_endpoint(self) -> Optional[str]:
        return self.provider.jwks_url

    async def _load_jwks(self, url: str, refresh: bool = False) -> Dict[str, Any]:
        cache = self.context.documents
        if refresh:
            cache.invalidate(url)
        else:
            cached = cache.get(url)
            if cached is not None:
                return cached
        try:
            response = await self.context.http.get(
                url, timeout=self.settings.http_timeout_seconds
            )
            response.raise_for_status()
            jwks = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Failed to fetch signing keys",
                extra={"provider_id": str(self.provider.id), "error": type(e).__name__},
            )
            raise TokenExchangeFailedError("Could not load identity provider signing keys")
        cache.put(url, jwks)
        return jwks

    async def verify_id_token(self, id_token: str, session: AuthSession) -> Dict[str, Any]:
        jwks_url = await self.jwks_endpoint()
        if not jwks_url:
            raise InvalidAssertionError("No signing keys configured for ID token")

        claims_options: Dict[str, Any] = {
            "sub": {"essential": True},
            "aud": {"essential": True, "value": self.provider.client_id},
            "exp": {"essential": True},
        }
        issuers = self.expected_issuers()
        if issuers:
            claims_options["iss"] = {"essential": True, "values": issuers}

        claims = None
        for refresh in (False, True):
            key_set = JsonWebKey.import_key_set(await self._load_jwks(jwks_url, refresh))
            try:
                claims = _id_token_jwt.decode(
                    id_token, key_set, claims_options=claims_options
                )
                break
            except ValueError:
                # Unknown kid: keys may have rotated, refetch once
                if refresh:
                    raise InvalidAssertionError("ID token signed with an unknown key")
            except JoseError as e:
                logger.info(
                    "ID token signature rejected",
                    extra={"provider_id": str(self.provider.id), "error": e.error},
                )
                raise InvalidAssertionError("ID token signature is invalid")

        try:
            claims.validate(leeway=self.settings.clock_skew_seconds)
        except JoseError as e:
            if e.error == "invalid_claim" and "iss" in str(e.description):
                raise InvalidIssuerError()
            if e.error == "expired_token":
                raise InvalidAssertionError("ID token has expired", code="TOKEN_EXPIRED")
            raise InvalidAssertionError(f"ID token rejected: {e.error}")

        nonce = claims.get("nonce")
        if not nonce or not hmac.compare_digest(str(nonce), session.nonce):
            raise InvalidAssertionError("ID token nonce does not match the sign-in request")

        return dict(claims)

    #        Userinfo
    # -------------------------------
    async def userinfo_endpoint(self) -> Optional[str]:
        return self.provider.userinfo_url

    def _needs_userinfo(self, claims: Dict[str, Any]) -> bool:
        email_claim = self.claim_name("email", "email")
        return not claims.get("sub") or not claims.get(email_claim)

    async def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        url = await self.userinfo_endpoint()
        if not url:
            return {}
        try:
            response = await self.context.http.get(
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.settings.http_timeout_seconds,
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Userinfo request failed",
                extra={"provider_id": str(self.provider.id), "error": type(e).__name__},
            )
            raise TokenExchangeFailedError("Could not load profile from identity provider")

    #        Claim mapping
    # -------------------------------
    def email_from_claims(self, claims: Dict[str, Any]) -> Optional[str]:
        return claims.get(self.claim_name("email", "email"))

    def map_profile(self, claims: Dict[str, Any]) -> ExternalProfile:
        subject = claims.get("sub")
        email = self.email_from_claims(claims)
        if not subject:
            raise InvalidAssertionError("Identity provider did not return a subject")
        if not email:
            raise InvalidAssertionError("Identity provider did not return an email address")

        groups = _as_list(claims.get(self.claim_name("groups", "groups")))
        roles = _as_list(claims.get(self.claim_name("roles", "roles")))

        return ExternalProfile(
            external_subject_id=str(subject),
            email=str(email).strip().lower(),
            first_name=claims.get(self.claim_name("first_name", "given_name")),
            last_name=claims.get(self.claim_name("last_name", "family_name")),
            display_name=claims.get(self.claim_name("display_name", "name")),
            groups=groups,
            roles=roles,
            raw_attributes={
                k: v for k, v in claims.items() if k not in _NON_PROFILE_CLAIMS
            },
        )

    def enforce_account_policy(
        self, claims: Dict[str, Any], profile: ExternalProfile
    ) -> None:
        """Family-specific account checks run after claims are mapped."""

    #        Diagnostics
    # -------------------------------
    async def test_connection(self) -> ConnectionTestResult:
        discovery_url = self.provider.metadata.get("discovery_url")
        if not discovery_url:
            return ConnectionTestResult(
                success=True, message="Configuration is complete"
            )
        return await self._probe_discovery(discovery_url, "Discovery endpoint reachable")


_NON_PROFILE_CLAIMS = {"nonce", "at_hash", "c_hash", "aud", "azp", "exp", "iat", "nbf", "auth_time"}


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


#       GOOGLE
# ------------------------------

GOOGLE_ISSUER = "https://accounts.google.com"
GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"


class GoogleProtocol(OAuth2Protocol):
    provider_types = (ProviderType.GOOGLE,)

    @classmethod
    def apply_defaults(cls, provider: ProviderConfig) -> ProviderConfig:
        defaults = {
            "issuer_url": GOOGLE_ISSUER,
            "authorization_url": "https://accounts.google.com/o/oauth2/v2/auth",
            "token_url": "https://oauth2.googleapis.com/token",
            "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
            "jwks_url": "https://www.googleapis.com/oauth2/v3/certs",
        }
        return provider.model_copy(
            update={k: v for k, v in defaults.items() if not getattr(provider, k)}
        )

    def expected_issuers(self) -> List[str]:
        # Google issues both forms of its issuer identifier
        return [GOOGLE_ISSUER, "accounts.google.com"]

    def authorization_extras(self, session: AuthSession) -> Dict[str, Any]:
        extras = {"access_type": "offline", "prompt": "consent"}
        hosted_domain = self.provider.metadata.get("hosted_domain")
        if hosted_domain:
            extras["hd"] = hosted_domain
        if session.login_hint:
            extras["login_hint"] = session.login_hint
        return extras

    def map_profile(self, claims: Dict[str, Any]) -> ExternalProfile:
        profile = super().map_profile(claims)
        if claims.get("hd"):
            profile.hosted_domain = str(claims["hd"]).lower()
        return profile

    def enforce_account_policy(
        self, claims: Dict[str, Any], profile: ExternalProfile
    ) -> None:
        if claims.get("email_verified") is False:
            raise InvalidAssertionError("Google account email is not verified")

        hosted_domain = self.provider.metadata.get("hosted_domain")
        if hosted_domain and profile.hosted_domain != hosted_domain.lower():
            raise DomainNotAllowedError(details={"domain": profile.account_domain})

    async def revoke_token(self, token: str) -> bool:
        """Revoke the grant behind a refresh or access token."""
        try:
            response = await self.context.http.post(
                GOOGLE_REVOKE_URL,
                data={"token": token},
                timeout=self.settings.http_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Google token revocation failed",
                extra={"provider_id": str(self.provider.id), "error": type(e).__name__},
            )
            return False
        # 400 is invalid_token: already revoked or expired
        if response.status_code > 400:
            logger.warning(
                "Google token revocation rejected",
                extra={
                    "provider_id": str(self.provider.id),
                    "status_code": response.status_code,
                },
            )
            return False
        return True

    async def test_connection(self) -> ConnectionTestResult:
        return await self._probe_discovery(
            GOOGLE_DISCOVERY_URL, "Successfully connected to Google OAuth"
        )


#       MICROSOFT
# ------------------------------

MICROSOFT_LOGIN = "https://login.microsoftonline.com"
# Tenant that owns personal Microsoft accounts (outlook.com, live.com, ...)
MICROSOFT_CONSUMER_TENANT = "9188040d-6c67-4c5b-b112-36a304b66dad"
_AZURE_TENANT_RE = re.compile(r"^[a-zA-Z0-9-]+$")


class MicrosoftProtocol(OAuth2Protocol):
    provider_types = (ProviderType.MICROSOFT,)
    endpoint_metadata_keys = ("azure_tenant_id",)
    derived_endpoint_fields = ("authorization_url", "token_url", "jwks_url")

    @property
    def azure_tenant(self) -> str:
        return self.provider.metadata.get("azure_tenant_id") or "common"

    @classmethod
    def apply_defaults(cls, provider: ProviderConfig) -> ProviderConfig:
        tenant = provider.metadata.get("azure_tenant_id") or "common"
        defaults = {
            "authorization_url": f"{MICROSOFT_LOGIN}/{tenant}/oauth2/v2.0/authorize",
            "token_url": f"{MICROSOFT_LOGIN}/{tenant}/oauth2/v2.0/token",
            "userinfo_url": "https://graph.microsoft.com/oidc/userinfo",
            "jwks_url": f"{MICROSOFT_LOGIN}/{tenant}/discovery/v2.0/keys",
        }
        update = {k: v for k, v in defaults.items() if not getattr(provider, k)}
        if provider.scopes == ["openid", "profile", "email"]:
            update["scopes"] = ["openid", "profile", "email", "User.Read"]
        return provider.model_copy(update=update)

    @classmethod
    def validate_config(cls, provider: ProviderConfig) -> None:
        super().validate_config(provider)
        tenant = provider.metadata.get("azure_tenant_id")
        if tenant and not _AZURE_TENANT_RE.match(tenant):
            raise ConfigurationError(
                "Invalid tenant ID format", details={"field": "azure_tenant_id"}
            )

    def expected_issuers(self) -> List[str]:
        # Multi-tenant endpoints issue per-tenant issuers; checked against tid below
        return []

    def authorization_extras(self, session: AuthSession) -> Dict[str, Any]:
        extras: Dict[str, Any] = {"response_mode": "query"}
        domain_hint = self.provider.metadata.get("domain_hint")
        if domain_hint:
            extras["domain_hint"] = domain_hint
        if session.login_hint:
            extras["login_hint"] = session.login_hint
        return extras

    async def verify_id_token(self, id_token: str, session: AuthSession) -> Dict[str, Any]:
        claims = await super().verify_id_token(id_token, session)
        tid = claims.get("tid")
        if not tid or claims.get("iss") != f"{MICROSOFT_LOGIN}/{tid}/v2.0":
            raise InvalidIssuerError()
        configured = self.provider.metadata.get("azure_tenant_id")
        if configured and _looks_like_guid(configured) and configured.lower() != tid.lower():
            raise InvalidIssuerError("ID token was issued for a different directory")
        return claims

    def email_from_claims(self, claims: Dict[str, Any]) -> Optional[str]:
        return (
            super().email_from_claims(claims)
            or claims.get("preferred_username")
            or claims.get("upn")
        )

    def enforce_account_policy(
        self, claims: Dict[str, Any], profile: ExternalProfile
    ) -> None:
        is_personal = claims.get("tid") == MICROSOFT_CONSUMER_TENANT
        if is_personal and self.provider.metadata.get("require_enterprise_accounts"):
            raise DomainNotAllowedError(
                "Personal Microsoft accounts cannot sign in with this provider"
            )

    async def test_connection(self) -> ConnectionTestResult:
        tenant = self.provider.metadata.get("azure_tenant_id")
        if tenant and not _AZURE_TENANT_RE.match(tenant):
            return ConnectionTestResult(success=False, message="Invalid tenant ID format")
        return await self._probe_discovery(
            f"{MICROSOFT_LOGIN}/{self.azure_tenant}/v2.0/.well-known/openid-configuration",
            "Successfully connected to Microsoft Entra ID",
            tenant=self.azure_tenant,
        )


def _looks_like_guid(value: str) -> bool:
    return bool(re.fullmatch(r"[0-9a-fA-F]{8}-([0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}", value))
