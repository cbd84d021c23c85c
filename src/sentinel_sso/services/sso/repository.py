"""
Storage interface consumed by the SSO services.

The PostgreSQL implementation lives in sentinel_sso.services.database; tests
use an in-memory implementation of the same protocol.
"""

from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional, Protocol
from uuid import UUID

from .schemas import (
    AuthSession,
    DomainMapping,
    ProviderConfig,
    SessionStatus,
    TenantMembership,
    User,
    UserIdentity,
)


class ISSORepository(Protocol):
    """Transactional lookup/upsert interface over the SSO and tenant tables."""

    def transaction(self) -> AbstractContextManager:
        """Group the enclosed calls into one unit that commits or rolls back together."""
        ...

    # Providers
    def insert_provider(self, provider: ProviderConfig) -> ProviderConfig: ...

    def get_provider(self, provider_id: UUID) -> Optional[ProviderConfig]: ...

    def list_providers(self, tenant_id: str) -> List[ProviderConfig]: ...

    def find_saml_providers(self, idp_entity_id: str) -> List[ProviderConfig]:
        """SAML providers of any tenant configured for this IdP entity id."""
        ...

    def update_provider(self, provider: ProviderConfig) -> ProviderConfig: ...

    def delete_provider(self, provider_id: UUID) -> int:
        """Delete a provider with its identities; returns deleted identity count."""
        ...

    def clear_default_provider(self, tenant_id: str) -> None: ...

    def touch_provider(self, provider_id: UUID, used_at: datetime) -> None: ...

    # Auth sessions
    def insert_auth_session(self, session: AuthSession) -> AuthSession: ...

    def get_auth_session_by_state(self, state: str) -> Optional[AuthSession]: ...

    def transition_auth_session(
        self, session_id: UUID, status: SessionStatus, at: datetime
    ) -> bool:
        """Move a pending session to `status`; False if it was no longer pending."""
        ...

    def delete_pending_sessions(
        self, tenant_id: str, provider_id: UUID, login_hint: str
    ) -> int: ...

    # Identities
    def get_identity(self, identity_id: UUID) -> Optional[UserIdentity]: ...

    def get_identity_by_subject(
        self, provider_id: UUID, external_subject_id: str
    ) -> Optional[UserIdentity]: ...

    def list_identities_for_user(self, user_id: UUID) -> List[UserIdentity]: ...

    def insert_identity(self, identity: UserIdentity) -> UserIdentity: ...

    def update_identity(self, identity: UserIdentity) -> UserIdentity: ...

    def delete_identity(self, identity_id: UUID) -> bool: ...

    # Domain mappings
    def upsert_domain_mapping(self, mapping: DomainMapping) -> DomainMapping: ...

    def get_domain_mapping(
        self, tenant_id: str, domain: str
    ) -> Optional[DomainMapping]: ...

    def list_domain_mappings(self, tenant_id: str) -> List[DomainMapping]: ...

    def delete_domain_mapping(self, tenant_id: str, domain: str) -> bool: ...

    # Users and tenant membership
    def get_user(self, user_id: UUID) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(self, user: User) -> User: ...

    def get_membership(
        self, user_id: UUID, tenant_id: str
    ) -> Optional[TenantMembership]: ...

    def insert_membership(self, membership: TenantMembership) -> TenantMembership: ...

    def update_membership(self, membership: TenantMembership) -> TenantMembership: ...
