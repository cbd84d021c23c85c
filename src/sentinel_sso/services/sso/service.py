"""
SSOService: the entry point the API layer talks to.

Wires the provider registry, domain discovery, session manager, protocol
variants and provisioning together, and reports every terminal sign-in
outcome to the audit channel exactly once.
"""

import logging
from typing import Dict, List, Optional
from urllib.parse import urlparse
from uuid import UUID

import httpx

from sentinel_sso.config import SSOSettings
from sentinel_sso.exceptions import (
    ConfigurationError,
    DomainNotAllowedError,
    InvalidAssertionError,
    InvalidIssuerError,
    InvalidSessionError,
    ProviderNotActiveError,
    SentinelError,
    TokenExchangeFailedError,
)
from sentinel_sso.services.audit import (
    AuditChannel,
    EventOutcome,
    SSOAction,
    SSOAuditEntry,
)
from sentinel_sso.services.crypto import SecretCipher
from .deprovisioning import Deprovisioner
from .discovery import DomainDiscovery
from .protocols import (
    CallbackPayload,
    ProtocolContext,
    build_logout_request,
    build_protocol,
    generate_sp_metadata,
    parse_idp_metadata,
    parse_redirect_message,
)
from .provisioning import IdentityProvisioner
from .registry import ProviderRegistry
from .repository import ISSORepository
from .schemas import (
    AuthMethodCheck,
    AuthorizationRequest,
    AuthSession,
    CallbackResult,
    ConnectionTestResult,
    DeprovisionReason,
    ExternalProfile,
    LogoutResult,
    ProviderConfig,
    ProviderCreate,
    ProviderType,
    UserIdentity,
)
from .sessions import AuthSessionManager

logger = logging.getLogger(__name__)


class SSOService:
    def __init__(
        self,
        repository: ISSORepository,
        cipher: SecretCipher,
        audit: AuditChannel,
        http: httpx.AsyncClient,
        settings: SSOSettings,
    ):
        self.settings = settings
        self.repository = repository
        self.audit = audit
        self.context = ProtocolContext(http=http, cipher=cipher, settings=settings)
        self.registry = ProviderRegistry(repository, cipher, audit, self.context)
        self.sessions = AuthSessionManager(repository, settings.session_ttl_minutes)
        self.discovery = DomainDiscovery(repository, self.registry, audit)
        self.provisioner = IdentityProvisioner(
            repository, cipher, audit, settings.baseline_role
        )
        self.deprovisioner = Deprovisioner(repository, self.sessions, audit)

    #        Provider administration
    # -------------------------------
    def create_provider_config(
        self, tenant_id: str, params: ProviderCreate, actor_id: Optional[str] = None
    ) -> ProviderConfig:
        return self.registry.create(tenant_id, params, actor_id)

    async def test_provider_connection(self, provider_id: UUID) -> ConnectionTestResult:
        return await self.registry.test_connection(provider_id)

    #        Home Realm Discovery
    # -------------------------------
    def find_provider_by_domain(
        self, tenant_id: str, email: str
    ) -> Optional[ProviderConfig]:
        return self.discovery.find_provider_by_domain(tenant_id, email)

    def check_auth_method(self, email: str, tenant_id: str) -> AuthMethodCheck:
        return self.discovery.check_auth_method(email, tenant_id)

    #        Sign-in
    # -------------------------------
    def _check_return_url(self, return_url: Optional[str]) -> None:
        if not return_url:
            return
        parsed = urlparse(return_url)
        if not parsed.netloc and return_url.startswith("/") and not return_url.startswith("//"):
            return
        base = urlparse(self.settings.base_url)
        if (parsed.scheme, parsed.netloc) != (base.scheme, base.netloc):
            raise ConfigurationError(
                "return_url must stay on this site", details={"field": "return_url"}
            )

    async def generate_authorization_url(
        self,
        tenant_id: str,
        provider_id: UUID,
        redirect_uri: Optional[str] = None,
        return_url: Optional[str] = None,
        login_hint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthorizationRequest:
        provider = self.registry.get_for_tenant(tenant_id, provider_id)
        if not provider.is_active:
            raise ProviderNotActiveError(details={"provider_id": str(provider_id)})
        self._check_return_url(return_url)

        if provider.provider_type == ProviderType.SAML:
            redirect_uri = self.settings.acs_url
        elif not redirect_uri:
            raise ConfigurationError(
                "redirect_uri is required", details={"field": "redirect_uri"}
            )

        protocol = build_protocol(provider, self.context)
        session = self.sessions.create(
            provider,
            protocol.create_challenge(),
            redirect_uri=redirect_uri,
            return_url=return_url,
            login_hint=login_hint,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(
            "SSO sign-in started",
            extra={
                "tenant_id": tenant_id,
                "provider_id": str(provider.id),
                "session_id": str(session.id),
            },
        )
        return await protocol.build_authorization_request(session)

    async def handle_callback(
        self,
        state: str,
        code: Optional[str],
        redirect_uri: Optional[str] = None,
        provider_id: Optional[UUID] = None,
        idp_error: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CallbackResult:
        """Complete an OAuth 2.0 / OIDC sign-in from the IdP redirect."""
        payload = CallbackPayload(code=code, redirect_uri=redirect_uri)
        return await self._complete_sign_in(
            state, provider_id, payload, idp_error, ip_address, user_agent
        )

    async def handle_saml_response(
        self,
        relay_state: str,
        saml_response: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CallbackResult:
        """Complete a SAML sign-in from the HTTP-POST binding."""
        provider_id, state = self._split_relay_state(relay_state, ip_address, user_agent)
        payload = CallbackPayload(saml_response=saml_response, relay_state=relay_state)
        return await self._complete_sign_in(
            state, provider_id, payload, None, ip_address, user_agent
        )

    def _split_relay_state(
        self, relay_state: str, ip_address: Optional[str], user_agent: Optional[str]
    ):
        provider_part, _, state = (relay_state or "").partition(":")
        try:
            provider_id = UUID(provider_part)
        except ValueError:
            provider_id = None
        if provider_id is None or not state:
            error = InvalidSessionError()
            self._emit_login(
                None, None, None, ip_address, user_agent, error_code=error.code
            )
            raise error
        return provider_id, state

    async def _complete_sign_in(
        self,
        state: str,
        provider_id: Optional[UUID],
        payload: CallbackPayload,
        idp_error: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> CallbackResult:
        session: Optional[AuthSession] = None
        try:
            session = self.sessions.load_pending(state, provider_id)
            provider = self.registry.get(session.provider_id)
            if not provider.is_active:
                raise ProviderNotActiveError()
            # Consumed before any IdP round trip so a replayed state is rejected
            session = self.sessions.complete(session)
            if idp_error:
                raise TokenExchangeFailedError(details={"idp_error": idp_error})

            profile, tokens = await build_protocol(provider, self.context).complete(
                session, payload
            )
            self._enforce_domain(provider, profile)

            self.registry.mark_used(provider)
            provisioned = self.provisioner.provision(provider, profile, tokens)
        except SentinelError as e:
            self._emit_login(
                session.tenant_id if session else None,
                session.provider_id if session else provider_id,
                None,
                ip_address,
                user_agent,
                error_code=e.code,
            )
            raise
        except Exception:
            logger.exception(
                "Unexpected error completing SSO sign-in",
                extra={"provider_id": str(provider_id) if provider_id else None},
            )
            self._emit_login(
                session.tenant_id if session else None,
                session.provider_id if session else provider_id,
                None,
                ip_address,
                user_agent,
                error_code="INTERNAL_ERROR",
            )
            raise

        self._emit_login(
            provider.tenant_id,
            provider.id,
            provisioned.user.id,
            ip_address,
            user_agent,
            is_new_user=provisioned.is_new_user,
            role=provisioned.assigned_role,
        )
        return CallbackResult(
            user=provisioned.user,
            tenant_id=provider.tenant_id,
            provider_id=provider.id,
            identity=provisioned.identity,
            tokens=tokens,
            assigned_role=provisioned.assigned_role,
            is_new_user=provisioned.is_new_user,
            return_url=session.return_url,
        )

    @staticmethod
    def _enforce_domain(provider: ProviderConfig, profile: ExternalProfile) -> None:
        if not provider.allows_domain(profile.account_domain):
            raise DomainNotAllowedError(details={"domain": profile.account_domain})

    def _emit_login(
        self,
        tenant_id: Optional[str],
        provider_id: Optional[UUID],
        user_id: Optional[UUID],
        ip_address: Optional[str],
        user_agent: Optional[str],
        error_code: Optional[str] = None,
        **metadata,
    ) -> None:
        if error_code is not None:
            logger.warning(
                "SSO sign-in failed",
                extra={
                    "tenant_id": tenant_id,
                    "provider_id": str(provider_id) if provider_id else None,
                    "error_code": error_code,
                },
            )
        self.audit.emit(
            SSOAuditEntry(
                tenant_id=tenant_id,
                provider_id=provider_id,
                user_id=user_id,
                action=SSOAction.LOGIN_FAILED if error_code else SSOAction.LOGIN,
                outcome=EventOutcome.FAILURE if error_code else EventOutcome.SUCCESS,
                error_code=error_code,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=metadata,
            )
        )

    #        Identity lifecycle
    # -------------------------------
    def deprovision_user(
        self,
        provider_id: UUID,
        external_subject_id: str,
        reason: DeprovisionReason,
        revoked_by: Optional[str] = None,
    ) -> Optional[UserIdentity]:
        return self.deprovisioner.deprovision(
            provider_id, external_subject_id, reason, revoked_by
        )

    def process_scim_deprovision(
        self, provider_id: UUID, scim_user_id: str, action: str = "delete"
    ) -> Optional[UserIdentity]:
        return self.deprovisioner.process_scim_deprovision(
            provider_id, scim_user_id, action
        )

    async def unlink_identity(
        self, identity_id: UUID, actor_id: Optional[str] = None
    ) -> None:
        """Unlink an identity, revoking its IdP grant first where the IdP supports it."""
        identity = self.repository.get_identity(identity_id)
        if identity is not None:
            provider = self.repository.get_provider(identity.provider_id)
            token = identity.refresh_token_encrypted or identity.access_token_encrypted
            if provider is not None and token:
                await build_protocol(provider, self.context).revoke_token(
                    self.context.cipher.decrypt(token)
                )
        self.provisioner.unlink(identity_id, actor_id)

    def list_identities(self, user_id: UUID) -> List[UserIdentity]:
        return self.provisioner.list_identities(user_id)

    async def check_token_validity(self, identity_id: UUID) -> bool:
        """
        Local checks first (missing, revoked, expired); an IdP that offers
        token introspection then has the final word on the access token.
        """
        if not self.provisioner.check_token_validity(identity_id):
            return False
        identity = self.repository.get_identity(identity_id)
        provider = self.repository.get_provider(identity.provider_id)
        if provider is None or not identity.access_token_encrypted:
            return True
        active = await build_protocol(provider, self.context).introspect_token(
            self.context.cipher.decrypt(identity.access_token_encrypted)
        )
        return active is not False

    #        SAML service provider
    # -------------------------------
    def generate_sp_metadata(self) -> str:
        return generate_sp_metadata(self.settings)

    def generate_logout_request(
        self,
        provider_id: UUID,
        name_id: str,
        session_index: Optional[str] = None,
        relay_state: Optional[str] = None,
    ) -> str:
        provider = self.registry.get(provider_id)
        if provider.provider_type != ProviderType.SAML:
            raise ConfigurationError("Single logout is only available for SAML providers")
        return build_logout_request(
            provider, self.settings, name_id, session_index, relay_state
        )

    async def handle_saml_logout(
        self,
        query: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LogoutResult:
        """
        Single logout endpoint (HTTP-Redirect binding).

        A LogoutRequest from the IdP must be signed. The SAML session index of
        the named identity is cleared and the browser is sent back to the IdP
        with a LogoutResponse. A LogoutResponse completes a logout this
        service started and returns the browser to a local RelayState path.
        """
        message = parse_redirect_message(query)
        providers = self.repository.find_saml_providers(message.issuer or "")
        if not providers:
            raise InvalidIssuerError(details={"issuer": message.issuer})

        # Tenants may share an IdP; the one whose certificate verifies answers
        failure: Optional[InvalidAssertionError] = None
        for provider in providers:
            protocol = build_protocol(provider, self.context)
            try:
                if message.is_request:
                    logout = protocol.read_logout_request(message)
                else:
                    protocol.read_logout_response(message)
                break
            except InvalidAssertionError as e:
                failure = e
        else:
            raise failure

        if not message.is_request:
            self._emit_logout(provider, None, ip_address, user_agent, initiator="sp")
            return LogoutResult(
                tenant_id=provider.tenant_id,
                provider_id=provider.id,
                redirect_url=self._local_path(message.relay_state),
            )

        redirect_url = protocol.logout_response_url(logout.request_id, message.relay_state)
        user_id = self._end_saml_session(provider, logout.name_id, logout.session_index)
        self._emit_logout(
            provider,
            user_id,
            ip_address,
            user_agent,
            initiator="idp",
            matched=user_id is not None,
        )
        return LogoutResult(
            tenant_id=provider.tenant_id,
            provider_id=provider.id,
            user_id=user_id,
            redirect_url=redirect_url,
        )

    def _end_saml_session(
        self, provider: ProviderConfig, name_id: str, session_index: Optional[str]
    ) -> Optional[UUID]:
        identity = self.repository.get_identity_by_subject(provider.id, name_id)
        if identity is None:
            return None
        current = identity.profile.get("session_index")
        if session_index and current and current != session_index:
            # The IdP is ending an older session; the current one stays
            return None
        self.repository.update_identity(
            identity.model_copy(
                update={"profile": {**identity.profile, "session_index": None}}
            )
        )
        logger.info(
            "SAML session ended by identity provider",
            extra={"provider_id": str(provider.id), "user_id": str(identity.user_id)},
        )
        return identity.user_id

    @staticmethod
    def _local_path(relay_state: Optional[str]) -> Optional[str]:
        if not relay_state or not relay_state.startswith("/"):
            return None
        if relay_state.startswith("//") or "\\" in relay_state:
            return None
        return relay_state

    def _emit_logout(
        self,
        provider: ProviderConfig,
        user_id: Optional[UUID],
        ip_address: Optional[str],
        user_agent: Optional[str],
        **metadata,
    ) -> None:
        self.audit.emit(
            SSOAuditEntry(
                tenant_id=provider.tenant_id,
                provider_id=provider.id,
                user_id=user_id,
                action=SSOAction.LOGOUT,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=metadata,
            )
        )

    @staticmethod
    def parse_idp_metadata(xml: str) -> Dict[str, Optional[str]]:
        return parse_idp_metadata(xml)
