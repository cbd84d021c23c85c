"""
DatabaseManager: PostgreSQL storage for SSO provider configurations, auth
sessions, linked identities, domain mappings, and the user/tenant tables the
provisioning step upserts into.

"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from os import path as os_path
from typing import Dict, List, Optional
from uuid import UUID

import psycopg2
from psycopg2 import pool
from psycopg2.extras import Json, RealDictCursor, register_uuid

from sentinel_sso.services.sso.schemas import (
    AuthSession,
    DomainMapping,
    ProviderConfig,
    SessionStatus,
    TenantMembership,
    User,
    UserIdentity,
)
from sentinel_sso.exceptions import DatabaseError

logger = logging.getLogger(__name__)

register_uuid()


_PROVIDER_JSON_FIELDS = (
    "scopes",
    "allowed_domains",
    "claim_mappings",
    "role_mapping",
    "metadata",
)


def _provider_from_row(row: Dict) -> ProviderConfig:
    data = dict(row)
    data["id"] = data.pop("provider_id")
    return ProviderConfig.model_validate(data)


def _session_from_row(row: Dict) -> AuthSession:
    data = dict(row)
    data["id"] = data.pop("session_id")
    return AuthSession.model_validate(data)


def _identity_from_row(row: Dict) -> UserIdentity:
    data = dict(row)
    data["id"] = data.pop("identity_id")
    return UserIdentity.model_validate(data)


def _mapping_from_row(row: Dict) -> DomainMapping:
    data = dict(row)
    data["id"] = data.pop("mapping_id")
    return DomainMapping.model_validate(data)


def _user_from_row(row: Dict) -> User:
    data = dict(row)
    data["id"] = data.pop("user_id")
    return User.model_validate(data)


class DatabaseManager:
    _MIN_POOL_SIZE = 2
    _MAX_POOL_SIZE = 10

    def __init__(
        self,
        database_url: str,
        min_pool_size: int = _MIN_POOL_SIZE,
        max_pool_size: int = _MAX_POOL_SIZE,
    ):
        self.connection_params = psycopg2.extensions.parse_dsn(database_url)
        self._min_pool_size = min_pool_size
        self._max_pool_size = max_pool_size
        self._pool = None
        self._active_conn: ContextVar = ContextVar(
            f"sso_db_conn_{id(self)}", default=None
        )
        self._init_tables()
        self._init_pool()

    def _init_pool(self):
        """Initialize connection pool."""
        try:
            self._pool = pool.ThreadedConnectionPool(
                self._min_pool_size, self._max_pool_size, **self.connection_params
            )
        except psycopg2.Error as e:
            raise DatabaseError(f"Failed to initialize connection pool: {e}") from e

    def _init_tables(self):
        """Initialize database tables from schema.sql."""
        try:
            schema_path = os_path.join(os_path.dirname(__file__), "schema.sql")
            with open(schema_path, "r") as f:
                schema_sql = f.read()
        except OSError as e:
            raise DatabaseError(f"Error reading database schema file: {e}") from e

        conn = psycopg2.connect(**self.connection_params)
        try:
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()
        except psycopg2.Error as e:
            raise DatabaseError(f"Error initializing database tables: {e}") from e
        finally:
            conn.close()
        logger.info("Database tables initialized.")

    @contextmanager
    def _get_connection(self):
        """
        Get a connection from the pool with automatic cleanup.

        Inside transaction() the transaction's connection is reused and the
        commit is deferred to the end of the transaction.
        """
        active = self._active_conn.get()
        if active is not None:
            yield active
            return

        conn = None
        try:
            conn = self._pool.getconn()
            yield conn
            conn.commit()
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            raise DatabaseError(f"Database connection error: {e}") from e
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self._pool.putconn(conn)

    @contextmanager
    def transaction(self):
        """Run the enclosed repository calls on one connection, committed once."""
        if self._active_conn.get() is not None:
            yield
            return

        conn = self._pool.getconn()
        token = self._active_conn.set(conn)
        try:
            yield
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise DatabaseError(f"Transaction failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            self._active_conn.reset(token)
            self._pool.putconn(conn)

    def _fetch_one(self, query: str, params) -> Optional[Dict]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return cur.fetchone()

    def _fetch_all(self, query: str, params) -> List[Dict]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return cur.fetchall()

    def _execute(self, query: str, params) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount

    #        Provider Management
    # -------------------------------
    def _provider_params(self, provider: ProviderConfig) -> Dict:
        data = provider.model_dump(mode="json")
        for field in _PROVIDER_JSON_FIELDS:
            data[field] = Json(data[field])
        data["provider_id"] = provider.id
        for field in ("verified_at", "last_used_at", "created_at", "updated_at"):
            data[field] = getattr(provider, field)
        return data

    def insert_provider(self, provider: ProviderConfig) -> ProviderConfig:
        row = self._fetch_one(
            """
            INSERT INTO sso_provider_configs (
                provider_id, tenant_id, name, provider_type, status,
                client_id, client_secret_encrypted,
                issuer_url, authorization_url, token_url, userinfo_url, jwks_url, logout_url,
                scopes, allowed_domains, auto_create_users, auto_link_existing_users,
                enforce_for_domains, is_default, claim_mappings, role_mapping, metadata,
                verified_at, last_used_at, created_by, created_at, updated_at
            ) VALUES (
                %(provider_id)s, %(tenant_id)s, %(name)s, %(provider_type)s, %(status)s,
                %(client_id)s, %(client_secret_encrypted)s,
                %(issuer_url)s, %(authorization_url)s, %(token_url)s, %(userinfo_url)s,
                %(jwks_url)s, %(logout_url)s,
                %(scopes)s, %(allowed_domains)s, %(auto_create_users)s,
                %(auto_link_existing_users)s, %(enforce_for_domains)s, %(is_default)s,
                %(claim_mappings)s, %(role_mapping)s, %(metadata)s,
                %(verified_at)s, %(last_used_at)s, %(created_by)s, %(created_at)s, %(updated_at)s
            ) RETURNING *
            """,
            self._provider_params(provider),
        )
        return _provider_from_row(row)

    def get_provider(self, provider_id: UUID) -> Optional[ProviderConfig]:
        row = self._fetch_one(
            "SELECT * FROM sso_provider_configs WHERE provider_id = %s",
            (provider_id,),
        )
        return _provider_from_row(row) if row else None

    def list_providers(self, tenant_id: str) -> List[ProviderConfig]:
        rows = self._fetch_all(
            """
            SELECT * FROM sso_provider_configs
            WHERE tenant_id = %s
            ORDER BY is_default DESC, created_at ASC
            """,
            (tenant_id,),
        )
        return [_provider_from_row(row) for row in rows]

    def find_saml_providers(self, idp_entity_id: str) -> List[ProviderConfig]:
        rows = self._fetch_all(
            """
            SELECT * FROM sso_provider_configs
            WHERE provider_type = 'saml' AND metadata->>'idp_entity_id' = %s
            ORDER BY created_at ASC
            """,
            (idp_entity_id,),
        )
        return [_provider_from_row(row) for row in rows]

    def update_provider(self, provider: ProviderConfig) -> ProviderConfig:
        row = self._fetch_one(
            """
            UPDATE sso_provider_configs SET
                name = %(name)s, status = %(status)s,
                client_id = %(client_id)s, client_secret_encrypted = %(client_secret_encrypted)s,
                issuer_url = %(issuer_url)s, authorization_url = %(authorization_url)s,
                token_url = %(token_url)s, userinfo_url = %(userinfo_url)s,
                jwks_url = %(jwks_url)s, logout_url = %(logout_url)s,
                scopes = %(scopes)s, allowed_domains = %(allowed_domains)s,
                auto_create_users = %(auto_create_users)s,
                auto_link_existing_users = %(auto_link_existing_users)s,
                enforce_for_domains = %(enforce_for_domains)s, is_default = %(is_default)s,
                claim_mappings = %(claim_mappings)s, role_mapping = %(role_mapping)s,
                metadata = %(metadata)s, verified_at = %(verified_at)s,
                last_used_at = %(last_used_at)s, updated_at = %(updated_at)s
            WHERE provider_id = %(provider_id)s
            RETURNING *
            """,
            self._provider_params(provider),
        )
        if not row:
            raise DatabaseError(f"Provider {provider.id} vanished during update")
        return _provider_from_row(row)

    def delete_provider(self, provider_id: UUID) -> int:
        with self.transaction():
            removed = self._execute(
                "DELETE FROM sso_user_identities WHERE provider_id = %s",
                (provider_id,),
            )
            self._execute(
                "DELETE FROM sso_provider_configs WHERE provider_id = %s",
                (provider_id,),
            )
        return removed

    def clear_default_provider(self, tenant_id: str) -> None:
        self._execute(
            "UPDATE sso_provider_configs SET is_default = FALSE WHERE tenant_id = %s",
            (tenant_id,),
        )

    def touch_provider(self, provider_id: UUID, used_at: datetime) -> None:
        self._execute(
            "UPDATE sso_provider_configs SET last_used_at = %s WHERE provider_id = %s",
            (used_at, provider_id),
        )

    #        Auth Sessions
    # -------------------------------
    def insert_auth_session(self, session: AuthSession) -> AuthSession:
        data = session.model_dump()
        data["session_id"] = data.pop("id")
        data["status"] = session.status.value
        row = self._fetch_one(
            """
            INSERT INTO sso_auth_sessions (
                session_id, tenant_id, provider_id, state, nonce,
                code_verifier, code_challenge, code_challenge_method,
                redirect_uri, return_url, login_hint, ip_address, user_agent,
                status, created_at, expires_at, completed_at
            ) VALUES (
                %(session_id)s, %(tenant_id)s, %(provider_id)s, %(state)s, %(nonce)s,
                %(code_verifier)s, %(code_challenge)s, %(code_challenge_method)s,
                %(redirect_uri)s, %(return_url)s, %(login_hint)s, %(ip_address)s,
                %(user_agent)s, %(status)s, %(created_at)s, %(expires_at)s, %(completed_at)s
            ) RETURNING *
            """,
            data,
        )
        return _session_from_row(row)

    def get_auth_session_by_state(self, state: str) -> Optional[AuthSession]:
        row = self._fetch_one(
            "SELECT * FROM sso_auth_sessions WHERE state = %s", (state,)
        )
        return _session_from_row(row) if row else None

    def transition_auth_session(
        self, session_id: UUID, status: SessionStatus, at: datetime
    ) -> bool:
        # Conditional update: only one caller can move a session out of pending
        updated = self._execute(
            """
            UPDATE sso_auth_sessions
            SET status = %s, completed_at = %s
            WHERE session_id = %s AND status = 'pending'
            """,
            (status.value, at, session_id),
        )
        return updated == 1

    def delete_pending_sessions(
        self, tenant_id: str, provider_id: UUID, login_hint: str
    ) -> int:
        return self._execute(
            """
            DELETE FROM sso_auth_sessions
            WHERE tenant_id = %s AND provider_id = %s
              AND status = 'pending' AND lower(login_hint) = lower(%s)
            """,
            (tenant_id, provider_id, login_hint),
        )

    #        Identity Management
    # -------------------------------
    def _identity_params(self, identity: UserIdentity) -> Dict:
        data = identity.model_dump()
        data["identity_id"] = data.pop("id")
        data["profile"] = Json(identity.model_dump(mode="json")["profile"])
        return data

    def get_identity(self, identity_id: UUID) -> Optional[UserIdentity]:
        row = self._fetch_one(
            "SELECT * FROM sso_user_identities WHERE identity_id = %s",
            (identity_id,),
        )
        return _identity_from_row(row) if row else None

    def get_identity_by_subject(
        self, provider_id: UUID, external_subject_id: str
    ) -> Optional[UserIdentity]:
        row = self._fetch_one(
            """
            SELECT * FROM sso_user_identities
            WHERE provider_id = %s AND external_subject_id = %s
            """,
            (provider_id, external_subject_id),
        )
        return _identity_from_row(row) if row else None

    def list_identities_for_user(self, user_id: UUID) -> List[UserIdentity]:
        rows = self._fetch_all(
            """
            SELECT * FROM sso_user_identities
            WHERE user_id = %s ORDER BY created_at ASC
            """,
            (user_id,),
        )
        return [_identity_from_row(row) for row in rows]

    def insert_identity(self, identity: UserIdentity) -> UserIdentity:
        row = self._fetch_one(
            """
            INSERT INTO sso_user_identities (
                identity_id, user_id, tenant_id, provider_id, external_subject_id,
                external_email, profile, access_token_encrypted, refresh_token_encrypted,
                token_expires_at, last_login_at, login_count, created_at
            ) VALUES (
                %(identity_id)s, %(user_id)s, %(tenant_id)s, %(provider_id)s,
                %(external_subject_id)s, %(external_email)s, %(profile)s,
                %(access_token_encrypted)s, %(refresh_token_encrypted)s,
                %(token_expires_at)s, %(last_login_at)s, %(login_count)s, %(created_at)s
            ) RETURNING *
            """,
            self._identity_params(identity),
        )
        return _identity_from_row(row)

    def update_identity(self, identity: UserIdentity) -> UserIdentity:
        row = self._fetch_one(
            """
            UPDATE sso_user_identities SET
                external_email = %(external_email)s, profile = %(profile)s,
                access_token_encrypted = %(access_token_encrypted)s,
                refresh_token_encrypted = %(refresh_token_encrypted)s,
                token_expires_at = %(token_expires_at)s,
                last_login_at = %(last_login_at)s, login_count = %(login_count)s
            WHERE identity_id = %(identity_id)s
            RETURNING *
            """,
            self._identity_params(identity),
        )
        if not row:
            raise DatabaseError(f"Identity {identity.id} vanished during update")
        return _identity_from_row(row)

    def delete_identity(self, identity_id: UUID) -> bool:
        return (
            self._execute(
                "DELETE FROM sso_user_identities WHERE identity_id = %s",
                (identity_id,),
            )
            == 1
        )

    #        Domain Mappings
    # -------------------------------
    def upsert_domain_mapping(self, mapping: DomainMapping) -> DomainMapping:
        row = self._fetch_one(
            """
            INSERT INTO sso_domain_mappings (
                mapping_id, tenant_id, domain, provider_id, verified, verified_at, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (tenant_id, domain) DO UPDATE SET
                provider_id = EXCLUDED.provider_id,
                verified = EXCLUDED.verified,
                verified_at = EXCLUDED.verified_at
            RETURNING *
            """,
            (
                mapping.id,
                mapping.tenant_id,
                mapping.domain,
                mapping.provider_id,
                mapping.verified,
                mapping.verified_at,
                mapping.created_at,
            ),
        )
        return _mapping_from_row(row)

    def get_domain_mapping(self, tenant_id: str, domain: str) -> Optional[DomainMapping]:
        row = self._fetch_one(
            "SELECT * FROM sso_domain_mappings WHERE tenant_id = %s AND domain = %s",
            (tenant_id, domain),
        )
        return _mapping_from_row(row) if row else None

    def list_domain_mappings(self, tenant_id: str) -> List[DomainMapping]:
        rows = self._fetch_all(
            "SELECT * FROM sso_domain_mappings WHERE tenant_id = %s ORDER BY domain",
            (tenant_id,),
        )
        return [_mapping_from_row(row) for row in rows]

    def delete_domain_mapping(self, tenant_id: str, domain: str) -> bool:
        return (
            self._execute(
                "DELETE FROM sso_domain_mappings WHERE tenant_id = %s AND domain = %s",
                (tenant_id, domain),
            )
            == 1
        )

    #        User Management
    # -------------------------------
    def get_user(self, user_id: UUID) -> Optional[User]:
        row = self._fetch_one("SELECT * FROM users WHERE user_id = %s", (user_id,))
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._fetch_one(
            "SELECT * FROM users WHERE lower(email) = lower(%s)", (email,)
        )
        return _user_from_row(row) if row else None

    def create_user(self, user: User) -> User:
        row = self._fetch_one(
            """
            INSERT INTO users (user_id, email, first_name, last_name, is_active, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                user.id,
                user.email,
                user.first_name,
                user.last_name,
                user.is_active,
                user.created_at,
            ),
        )
        return _user_from_row(row)

    #        Tenant Membership
    # -------------------------------
    def get_membership(self, user_id: UUID, tenant_id: str) -> Optional[TenantMembership]:
        row = self._fetch_one(
            "SELECT * FROM user_tenants WHERE user_id = %s AND tenant_id = %s",
            (user_id, tenant_id),
        )
        return TenantMembership.model_validate(row) if row else None

    def insert_membership(self, membership: TenantMembership) -> TenantMembership:
        row = self._fetch_one(
            """
            INSERT INTO user_tenants (user_id, tenant_id, role, is_active, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (user_id, tenant_id) DO NOTHING
            RETURNING *
            """,
            (
                membership.user_id,
                membership.tenant_id,
                membership.role,
                membership.is_active,
                membership.updated_at,
            ),
        )
        if not row:
            # Lost a race with a concurrent login; keep the row that won
            return self.get_membership(membership.user_id, membership.tenant_id)
        return TenantMembership.model_validate(row)

    def update_membership(self, membership: TenantMembership) -> TenantMembership:
        row = self._fetch_one(
            """
            UPDATE user_tenants SET role = %s, is_active = %s, updated_at = %s
            WHERE user_id = %s AND tenant_id = %s
            RETURNING *
            """,
            (
                membership.role,
                membership.is_active,
                membership.updated_at,
                membership.user_id,
                membership.tenant_id,
            ),
        )
        if not row:
            raise DatabaseError(
                f"Membership for user {membership.user_id} in {membership.tenant_id} not found"
            )
        return TenantMembership.model_validate(row)

    def ping(self) -> bool:
        try:
            return self._fetch_one("SELECT 1 AS ok", ()) is not None
        except DatabaseError:
            return False

    def close(self):
        if self._pool:
            self._pool.closeall()
            self._pool = None
