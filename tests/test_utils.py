"""
Testing utilities for Sentinel SSO.

This module provides:
- Centralized test user and tenant constants with predictable UUIDs
- Mock user context factory and dependency override helper
- An in-memory implementation of the SSO repository
- A recording audit channel
- Builders for providers, sessions and profiles

Coverage:
- TestUsers: Constants for test users and tenants
- MockUserContext: Factory for creating mock UserContext instances
- create_mock_get_current_user: Dependency override helper
- InMemorySSORepository: Transactional dict-backed ISSORepository
- RecordingAuditChannel: Captures emitted audit events
- build_provider / TestDataBuilder: Test data builders

Test types: Utility module (no tests, supports other test modules)
"""

import copy
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sentinel_sso.services.audit import SSOAction, SSOAuditEntry
from sentinel_sso.services.auth import UserContext
from sentinel_sso.services.sso.schemas import (
    AuthSession,
    DomainMapping,
    ProviderConfig,
    ProviderStatus,
    ProviderType,
    SessionStatus,
    TenantMembership,
    User,
    UserIdentity,
)


#                        TEST DATA CONSTANTS
# ----------------------------------------------------------------------------


class TestUsers:
    """
    Centralized test user UUIDs for consistency across tests.

    Each UUID's last byte indicates the user type:
    - 001: Regular member
    - 004: Tenant admin
    """

    REGULAR_USER_ID = UUID("00000000-0000-0000-0000-000000000001")
    ADMIN_USER_ID = UUID("00000000-0000-0000-0000-000000000004")

    DEFAULT_TENANT_ID = "test-tenant-001"
    SECONDARY_TENANT_ID = "test-tenant-002"

    ADMIN_EMAIL = "admin@acme.com"
    USER_EMAIL = "user@acme.com"


TEST_SECRET_KEY = "test-secret-key-minimum-32-characters-long"
TEST_BASE_URL = "https://sso.test.example"


#                       MOCK USER CONTEXT FACTORY
# ----------------------------------------------------------------------------


class MockUserContext:
    """Factory for creating mock user contexts for testing."""

    @staticmethod
    def create_admin(
        user_id: Optional[UUID] = None,
        email: str = TestUsers.ADMIN_EMAIL,
        tenant_id: str = TestUsers.DEFAULT_TENANT_ID,
        role: str = "admin",
    ) -> UserContext:
        return UserContext(
            user_id=str(user_id or TestUsers.ADMIN_USER_ID),
            email=email,
            tenant_id=tenant_id,
            role=role,
        )

    @staticmethod
    def create_user(
        user_id: Optional[UUID] = None,
        email: str = TestUsers.USER_EMAIL,
        tenant_id: str = TestUsers.DEFAULT_TENANT_ID,
        role: str = "member",
        provider_id: Optional[UUID] = None,
    ) -> UserContext:
        return UserContext(
            user_id=str(user_id or TestUsers.REGULAR_USER_ID),
            email=email,
            tenant_id=tenant_id,
            role=role,
            provider_id=str(provider_id) if provider_id else None,
        )


def create_mock_get_current_user(user_context: UserContext):
    """
    Create a mock dependency function for get_current_active_user.

    Usage:
        app.dependency_overrides[get_current_active_user] = (
            create_mock_get_current_user(MockUserContext.create_admin())
        )
    """

    async def mock_get_current_user() -> UserContext:
        return user_context

    return mock_get_current_user


#                       IN-MEMORY REPOSITORY
# ----------------------------------------------------------------------------


class InMemorySSORepository:
    """
    Dict-backed ISSORepository.

    transaction() snapshots every table and restores the snapshot when the
    block raises, so rollback behaviour can be asserted.
    """

    _TABLES = (
        "providers",
        "sessions",
        "identities",
        "mappings",
        "users",
        "memberships",
    )

    def __init__(self):
        self.providers: Dict[UUID, ProviderConfig] = {}
        self.sessions: Dict[UUID, AuthSession] = {}
        self.identities: Dict[UUID, UserIdentity] = {}
        self.mappings: Dict[tuple, DomainMapping] = {}
        self.users: Dict[UUID, User] = {}
        self.memberships: Dict[tuple, TenantMembership] = {}
        self._depth = 0
        self.commits = 0
        self.rollbacks = 0

    @contextmanager
    def transaction(self):
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}
        self._depth = 1
        try:
            yield
        except Exception:
            for name, table in snapshot.items():
                setattr(self, name, table)
            self.rollbacks += 1
            raise
        else:
            self.commits += 1
        finally:
            self._depth = 0

    # Providers
    def insert_provider(self, provider: ProviderConfig) -> ProviderConfig:
        self.providers[provider.id] = provider
        return provider

    def get_provider(self, provider_id: UUID) -> Optional[ProviderConfig]:
        return self.providers.get(provider_id)

    def list_providers(self, tenant_id: str) -> List[ProviderConfig]:
        return [p for p in self.providers.values() if p.tenant_id == tenant_id]

    def find_saml_providers(self, idp_entity_id: str) -> List[ProviderConfig]:
        return [
            p
            for p in self.providers.values()
            if p.provider_type == ProviderType.SAML
            and p.metadata.get("idp_entity_id") == idp_entity_id
        ]

    def update_provider(self, provider: ProviderConfig) -> ProviderConfig:
        self.providers[provider.id] = provider
        return provider

    def delete_provider(self, provider_id: UUID) -> int:
        linked = [i.id for i in self.identities.values() if i.provider_id == provider_id]
        for identity_id in linked:
            del self.identities[identity_id]
        self.providers.pop(provider_id, None)
        return len(linked)

    def clear_default_provider(self, tenant_id: str) -> None:
        for provider in self.list_providers(tenant_id):
            self.providers[provider.id] = provider.model_copy(update={"is_default": False})

    def touch_provider(self, provider_id: UUID, used_at: datetime) -> None:
        provider = self.providers[provider_id]
        self.providers[provider_id] = provider.model_copy(update={"last_used_at": used_at})

    # Auth sessions
    def insert_auth_session(self, session: AuthSession) -> AuthSession:
        self.sessions[session.id] = session
        return session

    def get_auth_session_by_state(self, state: str) -> Optional[AuthSession]:
        return next((s for s in self.sessions.values() if s.state == state), None)

    def transition_auth_session(
        self, session_id: UUID, status: SessionStatus, at: datetime
    ) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session.status != SessionStatus.PENDING:
            return False
        self.sessions[session_id] = session.model_copy(
            update={"status": status, "completed_at": at}
        )
        return True

    def delete_pending_sessions(
        self, tenant_id: str, provider_id: UUID, login_hint: str
    ) -> int:
        doomed = [
            s.id
            for s in self.sessions.values()
            if s.tenant_id == tenant_id
            and s.provider_id == provider_id
            and s.status == SessionStatus.PENDING
            and (s.login_hint or "").lower() == login_hint.lower()
        ]
        for session_id in doomed:
            del self.sessions[session_id]
        return len(doomed)

    # Identities
    def get_identity(self, identity_id: UUID) -> Optional[UserIdentity]:
        return self.identities.get(identity_id)

    def get_identity_by_subject(
        self, provider_id: UUID, external_subject_id: str
    ) -> Optional[UserIdentity]:
        return next(
            (
                i
                for i in self.identities.values()
                if i.provider_id == provider_id
                and i.external_subject_id == external_subject_id
            ),
            None,
        )

    def list_identities_for_user(self, user_id: UUID) -> List[UserIdentity]:
        return [i for i in self.identities.values() if i.user_id == user_id]

    def insert_identity(self, identity: UserIdentity) -> UserIdentity:
        self.identities[identity.id] = identity
        return identity

    def update_identity(self, identity: UserIdentity) -> UserIdentity:
        self.identities[identity.id] = identity
        return identity

    def delete_identity(self, identity_id: UUID) -> bool:
        return self.identities.pop(identity_id, None) is not None

    # Domain mappings
    def upsert_domain_mapping(self, mapping: DomainMapping) -> DomainMapping:
        self.mappings[(mapping.tenant_id, mapping.domain)] = mapping
        return mapping

    def get_domain_mapping(self, tenant_id: str, domain: str) -> Optional[DomainMapping]:
        return self.mappings.get((tenant_id, domain))

    def list_domain_mappings(self, tenant_id: str) -> List[DomainMapping]:
        return [m for (tenant, _), m in self.mappings.items() if tenant == tenant_id]

    def delete_domain_mapping(self, tenant_id: str, domain: str) -> bool:
        return self.mappings.pop((tenant_id, domain), None) is not None

    # Users and tenant membership
    def get_user(self, user_id: UUID) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return next(
            (u for u in self.users.values() if u.email.lower() == email.lower()), None
        )

    def create_user(self, user: User) -> User:
        self.users[user.id] = user
        return user

    def get_membership(self, user_id: UUID, tenant_id: str) -> Optional[TenantMembership]:
        return self.memberships.get((user_id, tenant_id))

    def insert_membership(self, membership: TenantMembership) -> TenantMembership:
        self.memberships[(membership.user_id, membership.tenant_id)] = membership
        return membership

    def update_membership(self, membership: TenantMembership) -> TenantMembership:
        self.memberships[(membership.user_id, membership.tenant_id)] = membership
        return membership


#                          AUDIT RECORDING
# ----------------------------------------------------------------------------


class RecordingAuditChannel:
    """Stands in for AuditChannel; keeps every emitted event in order."""

    def __init__(self):
        self.events: List[SSOAuditEntry] = []

    def emit(self, entry: SSOAuditEntry) -> bool:
        self.events.append(entry)
        return True

    def actions(self) -> List[SSOAction]:
        return [event.action for event in self.events]

    def of(self, action: SSOAction) -> List[SSOAuditEntry]:
        return [event for event in self.events if event.action == action]


class RecordingAuditSink:
    """IAuditService that stores what the channel writer hands it."""

    def __init__(self, fail_on: Optional[SSOAction] = None):
        self.entries: List[SSOAuditEntry] = []
        self.fail_on = fail_on

    async def log(self, entry: SSOAuditEntry):
        if entry.action == self.fail_on:
            raise RuntimeError("audit store unavailable")
        self.entries.append(entry)
        return None


#                          TEST DATA BUILDERS
# ----------------------------------------------------------------------------


def build_provider(
    provider_type: ProviderType = ProviderType.OIDC,
    tenant_id: str = TestUsers.DEFAULT_TENANT_ID,
    active: bool = True,
    **overrides: Any,
) -> ProviderConfig:
    """A stored provider row, bypassing registry validation."""
    fields: Dict[str, Any] = {
        "tenant_id": tenant_id,
        "name": f"{provider_type.value} provider",
        "provider_type": provider_type,
        "status": ProviderStatus.ACTIVE if active else ProviderStatus.INACTIVE,
        "client_id": "client-123",
    }
    fields.update(overrides)
    return ProviderConfig(**fields)


def seed_user(
    repository: InMemorySSORepository,
    email: str = TestUsers.USER_EMAIL,
    tenant_id: Optional[str] = TestUsers.DEFAULT_TENANT_ID,
    role: str = "member",
) -> User:
    user = repository.create_user(User(email=email))
    if tenant_id:
        repository.insert_membership(
            TenantMembership(user_id=user.id, tenant_id=tenant_id, role=role)
        )
    return user
