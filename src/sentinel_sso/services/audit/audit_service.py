"""
Audit Logging Service for SSO events.
Persists provider administration, sign-in and deprovisioning events.
"""

import json
from typing import Optional, Protocol
from uuid import UUID

import asyncpg

from .schemas import SSOAuditEntry


class IAuditService(Protocol):
    """Interface for audit sinks - enables easy mocking."""

    async def log(self, entry: SSOAuditEntry) -> Optional[UUID]: ...


class AuditService:
    """
    Central audit logging service for compliance requirements.
    Writes are issued by the AuditChannel writer, never on the request path.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def log(self, entry: SSOAuditEntry) -> UUID:
        """
        Log an audit event to the database.
        Returns the log_id for reference.
        """
        query = """
            INSERT INTO sso_audit_log (
                tenant_id, user_id, provider_id, action, outcome, error_code,
                ip_address, user_agent, metadata, created_at, retention_years
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11
            ) RETURNING log_id
        """

        async with self.db_pool.acquire() as conn:
            log_id = await conn.fetchval(
                query,
                entry.tenant_id,
                entry.user_id,
                entry.provider_id,
                entry.action.value,
                entry.outcome.value,
                entry.error_code,
                entry.ip_address,
                entry.user_agent,
                json.dumps(entry.metadata, default=str) if entry.metadata else None,
                entry.created_at,
                entry.retention_years,
            )

        return log_id
