"""
Identity resolution and Just-In-Time provisioning.

Maps a verified ExternalProfile to an internal user, its linked identity and
its tenant membership. All writes for one sign-in happen in a single
repository transaction.
"""

import logging
from typing import List, Optional
from uuid import UUID

from sentinel_sso.exceptions import AutoProvisioningDisabledError, IdentityNotFoundError
from sentinel_sso.services.audit import AuditChannel, SSOAction, SSOAuditEntry
from sentinel_sso.services.crypto import SecretCipher
from .repository import ISSORepository
from .roles import BASELINE_ROLE, resolve_role
from .schemas import (
    ExternalProfile,
    ProviderConfig,
    ProvisioningResult,
    TenantMembership,
    TokenSet,
    User,
    UserIdentity,
    utcnow,
)

logger = logging.getLogger(__name__)


class IdentityProvisioner:
    def __init__(
        self,
        repository: ISSORepository,
        cipher: SecretCipher,
        audit: AuditChannel,
        baseline_role: str = BASELINE_ROLE,
    ):
        self.repository = repository
        self.cipher = cipher
        self.audit = audit
        self.baseline_role = baseline_role

    def provision(
        self, provider: ProviderConfig, profile: ExternalProfile, tokens: TokenSet
    ) -> ProvisioningResult:
        with self.repository.transaction():
            identity = self.repository.get_identity_by_subject(
                provider.id, profile.external_subject_id
            )
            is_new_user = False

            if identity is not None:
                user = self.repository.get_user(identity.user_id)
                identity = self.repository.update_identity(
                    self._refresh_identity(identity, profile, tokens)
                )
            else:
                user = self.repository.get_user_by_email(profile.email)
                if user is None:
                    if not provider.auto_create_users:
                        raise AutoProvisioningDisabledError()
                    user = self.repository.create_user(
                        User(
                            email=profile.email,
                            first_name=profile.first_name,
                            last_name=profile.last_name,
                        )
                    )
                    is_new_user = True
                elif not provider.auto_link_existing_users:
                    raise AutoProvisioningDisabledError(
                        "An account with this email already exists. Sign in with your "
                        "password and link your identity provider from your profile."
                    )
                identity = self.repository.insert_identity(
                    self._new_identity(user.id, provider, profile, tokens)
                )

            role = resolve_role(
                [*profile.groups, *profile.roles],
                provider.role_mapping,
                self.baseline_role,
            )
            membership = self._ensure_membership(user.id, provider.tenant_id, role)

        logger.info(
            "SSO identity provisioned",
            extra={
                "tenant_id": provider.tenant_id,
                "provider_id": str(provider.id),
                "user_id": str(user.id),
                "is_new_user": is_new_user,
                "role": role,
            },
        )
        return ProvisioningResult(
            user=user,
            identity=identity,
            membership=membership,
            assigned_role=role,
            is_new_user=is_new_user,
        )

    def _new_identity(
        self,
        user_id: UUID,
        provider: ProviderConfig,
        profile: ExternalProfile,
        tokens: TokenSet,
    ) -> UserIdentity:
        now = utcnow()
        return UserIdentity(
            user_id=user_id,
            tenant_id=provider.tenant_id,
            provider_id=provider.id,
            external_subject_id=profile.external_subject_id,
            external_email=profile.email,
            profile=profile.snapshot(),
            access_token_encrypted=self.cipher.encrypt_optional(tokens.access_token),
            refresh_token_encrypted=self.cipher.encrypt_optional(tokens.refresh_token),
            token_expires_at=tokens.expires_at,
            last_login_at=now,
            login_count=1,
            created_at=now,
        )

    def _refresh_identity(
        self, identity: UserIdentity, profile: ExternalProfile, tokens: TokenSet
    ) -> UserIdentity:
        refresh_token = self.cipher.encrypt_optional(tokens.refresh_token)
        return identity.model_copy(
            update={
                "external_email": profile.email,
                # A fresh sign-in replaces the snapshot, clearing any revocation
                "profile": profile.snapshot(),
                "access_token_encrypted": self.cipher.encrypt_optional(tokens.access_token),
                "refresh_token_encrypted": refresh_token or identity.refresh_token_encrypted,
                "token_expires_at": tokens.expires_at,
                "last_login_at": utcnow(),
                "login_count": identity.login_count + 1,
            }
        )

    def _ensure_membership(
        self, user_id: UUID, tenant_id: str, role: str
    ) -> TenantMembership:
        membership = self.repository.get_membership(user_id, tenant_id)
        if membership is None:
            return self.repository.insert_membership(
                TenantMembership(user_id=user_id, tenant_id=tenant_id, role=role)
            )
        if membership.role != role or not membership.is_active:
            return self.repository.update_membership(
                membership.model_copy(
                    update={"role": role, "is_active": True, "updated_at": utcnow()}
                )
            )
        return membership

    #        Linked identities
    # -------------------------------
    def list_identities(self, user_id: UUID) -> List[UserIdentity]:
        return self.repository.list_identities_for_user(user_id)

    def get_identity(self, identity_id: UUID) -> UserIdentity:
        identity = self.repository.get_identity(identity_id)
        if identity is None:
            raise IdentityNotFoundError(details={"identity_id": str(identity_id)})
        return identity

    def unlink(self, identity_id: UUID, actor_id: Optional[str] = None) -> None:
        identity = self.repository.get_identity(identity_id)
        if identity is None or not self.repository.delete_identity(identity_id):
            raise IdentityNotFoundError(details={"identity_id": str(identity_id)})

        self.audit.emit(
            SSOAuditEntry(
                tenant_id=identity.tenant_id,
                user_id=identity.user_id,
                provider_id=identity.provider_id,
                action=SSOAction.IDENTITY_UNLINKED,
                metadata={"actor_id": actor_id},
            )
        )

    def check_token_validity(self, identity_id: UUID) -> bool:
        """False once the identity is gone, revoked, or its IdP token has expired."""
        identity = self.repository.get_identity(identity_id)
        if identity is None or identity.is_revoked:
            return False
        if identity.token_expires_at and identity.token_expires_at <= utcnow():
            return False
        return True
