import logging
from typing import Optional
from uuid import UUID

from sentinel_sso.services.audit import AuditChannel, SSOAction, SSOAuditEntry
from .repository import ISSORepository
from .schemas import DeprovisionReason, UserIdentity, utcnow
from .sessions import AuthSessionManager

logger = logging.getLogger(__name__)


class Deprovisioner:
    """Revokes access for identities the IdP no longer vouches for."""

    def __init__(
        self,
        repository: ISSORepository,
        sessions: AuthSessionManager,
        audit: AuditChannel,
    ):
        self.repository = repository
        self.sessions = sessions
        self.audit = audit

    def deprovision(
        self,
        provider_id: UUID,
        external_subject_id: str,
        reason: DeprovisionReason,
        revoked_by: Optional[str] = None,
    ) -> Optional[UserIdentity]:
        """
        Clear stored tokens, mark the identity revoked and deactivate the
        tenant membership. Unknown identities are ignored and return None.
        """
        identity = self.repository.get_identity_by_subject(
            provider_id, external_subject_id
        )
        if identity is None:
            logger.info(
                "Deprovision requested for unknown identity",
                extra={"provider_id": str(provider_id), "reason": reason.value},
            )
            return None

        now = utcnow()
        with self.repository.transaction():
            identity = self.repository.update_identity(
                identity.model_copy(
                    update={
                        "access_token_encrypted": None,
                        "refresh_token_encrypted": None,
                        "token_expires_at": None,
                        "profile": {
                            **identity.profile,
                            "revoked": True,
                            "revoked_at": now.isoformat(),
                        },
                    }
                )
            )

            membership = self.repository.get_membership(
                identity.user_id, identity.tenant_id
            )
            if membership is not None and membership.is_active:
                self.repository.update_membership(
                    membership.model_copy(update={"is_active": False, "updated_at": now})
                )

            discarded = 0
            if identity.external_email:
                discarded = self.sessions.discard_pending(
                    identity.tenant_id, provider_id, identity.external_email
                )

        logger.info(
            "SSO identity deprovisioned",
            extra={
                "tenant_id": identity.tenant_id,
                "provider_id": str(provider_id),
                "user_id": str(identity.user_id),
                "reason": reason.value,
                "discarded_sessions": discarded,
            },
        )
        self.audit.emit(
            SSOAuditEntry(
                tenant_id=identity.tenant_id,
                user_id=identity.user_id,
                provider_id=provider_id,
                action=SSOAction.DEPROVISION,
                metadata={"reason": reason.value, "revoked_by": revoked_by},
            )
        )
        return identity

    def process_scim_deprovision(
        self, provider_id: UUID, scim_user_id: str, action: str = "delete"
    ) -> Optional[UserIdentity]:
        """SCIM delete/deactivate events both revoke the linked identity."""
        identity = self.deprovision(
            provider_id, scim_user_id, DeprovisionReason.SCIM_DELETE, revoked_by="scim"
        )
        if identity is None:
            logger.info(
                "SCIM event for unlinked user",
                extra={"provider_id": str(provider_id), "action": action},
            )
        return identity
