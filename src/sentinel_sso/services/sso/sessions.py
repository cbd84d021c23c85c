"""
AuthSession lifecycle: created pending for each login attempt, consumed exactly
once by the callback, expired lazily when touched after its deadline.
"""

import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from sentinel_sso.exceptions import (
    InvalidSessionError,
    ProviderMismatchError,
    SessionExpiredError,
)
from .protocols import Challenge
from .repository import ISSORepository
from .schemas import AuthSession, ProviderConfig, SessionStatus, utcnow

logger = logging.getLogger(__name__)


class AuthSessionManager:
    def __init__(self, repository: ISSORepository, ttl_minutes: int = 10):
        self.repository = repository
        self.ttl = timedelta(minutes=ttl_minutes)

    def create(
        self,
        provider: ProviderConfig,
        challenge: Challenge,
        redirect_uri: str,
        return_url: Optional[str] = None,
        login_hint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthSession:
        now = utcnow()
        session = AuthSession(
            tenant_id=provider.tenant_id,
            provider_id=provider.id,
            state=challenge.state,
            nonce=challenge.nonce,
            code_verifier=challenge.code_verifier,
            code_challenge=challenge.code_challenge,
            code_challenge_method=challenge.code_challenge_method,
            redirect_uri=redirect_uri,
            return_url=return_url,
            login_hint=login_hint.lower() if login_hint else None,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            expires_at=now + self.ttl,
        )
        return self.repository.insert_auth_session(session)

    def load_pending(
        self, state: str, provider_id: Optional[UUID] = None
    ) -> AuthSession:
        """
        Fetch the pending session for a callback state.

        Raises InvalidSessionError when the state is unknown or already used,
        SessionExpiredError (after marking the row expired) when it is past its
        deadline, and ProviderMismatchError when the callback names a
        different provider than the one the session was started with.
        """
        session = self.repository.get_auth_session_by_state(state)
        if session is None or session.status != SessionStatus.PENDING:
            raise InvalidSessionError()

        if session.is_expired():
            self.repository.transition_auth_session(
                session.id, SessionStatus.EXPIRED, utcnow()
            )
            logger.info(
                "Auth session expired before callback",
                extra={"session_id": str(session.id), "tenant_id": session.tenant_id},
            )
            raise SessionExpiredError()

        if provider_id is not None and session.provider_id != provider_id:
            raise ProviderMismatchError()

        return session

    def complete(self, session: AuthSession) -> AuthSession:
        """Compare-and-swap pending -> completed; a lost race is an invalid session."""
        completed_at = utcnow()
        if not self.repository.transition_auth_session(
            session.id, SessionStatus.COMPLETED, completed_at
        ):
            raise InvalidSessionError()
        return session.model_copy(
            update={"status": SessionStatus.COMPLETED, "completed_at": completed_at}
        )

    def discard_pending(self, tenant_id: str, provider_id: UUID, login_hint: str) -> int:
        return self.repository.delete_pending_sessions(
            tenant_id, provider_id, login_hint.lower()
        )
