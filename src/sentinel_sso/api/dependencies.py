"""
This module defines the dependency injection system for the Sentinel SSO API
using FastAPI.

"""

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional
from uuid import UUID

import httpx
from fastapi import Depends, HTTPException, Request, status

from sentinel_sso.config import AppSettings, get_settings
from sentinel_sso.services.audit import (
    AuditChannel,
    AuditDatabaseManager,
    AuditService,
    IAuditService,
    SSOAuditEntry,
)
from sentinel_sso.services.auth import ADMIN_ROLES, UserContext
from sentinel_sso.services.auth import (
    get_current_active_user as _get_current_active_user,
)
from sentinel_sso.services.crypto import SecretCipher
from sentinel_sso.services.database import DatabaseManager
from sentinel_sso.services.sso import SSOService

logger = logging.getLogger(__name__)


class NullAuditSink:
    """No-op audit sink for when audit persistence is disabled."""

    async def log(self, entry: SSOAuditEntry) -> Optional[UUID]:
        return None


# Application State Management
# ----------------------------


class AppState:
    """
    Centralized application state container.

    Owns the process-wide collaborators (database pool, cipher, HTTP client,
    audit channel) and the SSOService built from them.
    """

    def __init__(self):
        self.db: Optional[DatabaseManager] = None
        self.cipher: Optional[SecretCipher] = None
        self.http: Optional[httpx.AsyncClient] = None
        self.audit_db: Optional[AuditDatabaseManager] = None
        self.audit_sink: Optional[IAuditService] = None
        self.audit_channel: Optional[AuditChannel] = None
        self.sso_service: Optional[SSOService] = None
        self._initialized: bool = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self, settings: AppSettings) -> None:
        """Initialize all application components."""
        if self._initialized:
            return

        self.db = DatabaseManager(
            settings.database.dsn,
            min_pool_size=settings.database.min_pool_size,
            max_pool_size=settings.database.max_pool_size,
        )
        self.cipher = SecretCipher(settings.encryption_secret)
        self.http = httpx.AsyncClient(
            timeout=settings.sso.http_timeout_seconds, follow_redirects=False
        )

        if settings.audit.enabled:
            self.audit_db = AuditDatabaseManager(
                database_url=settings.database.dsn,
                min_pool_size=1,
                max_pool_size=settings.database.min_pool_size,
            )
            await self.audit_db.initialize()
            self.audit_sink = AuditService(self.audit_db.pool)
        else:
            self.audit_sink = NullAuditSink()

        self.audit_channel = AuditChannel(
            self.audit_sink, max_size=settings.audit.queue_size
        )
        await self.audit_channel.start()

        self.sso_service = SSOService(
            repository=self.db,
            cipher=self.cipher,
            audit=self.audit_channel,
            http=self.http,
            settings=settings.sso,
        )
        self._initialized = True

    async def shutdown(self) -> None:
        """Clean up all resources."""
        if self.audit_channel:
            await self.audit_channel.stop()
            self.audit_channel = None

        if self.audit_db:
            await self.audit_db.close()
            self.audit_db = None

        if self.http:
            await self.http.aclose()
            self.http = None

        if self.db:
            self.db.close()
            self.db = None

        self.sso_service = None
        self.audit_sink = None
        self.cipher = None
        self._initialized = False


_app_state = AppState()


def get_app_state() -> AppState:
    return _app_state


@asynccontextmanager
async def app_lifespan(app):
    settings = get_settings()
    state = get_app_state()

    await state.initialize(settings)

    audit_status = "enabled" if settings.audit.enabled else "disabled"
    logger.info("Sentinel SSO API started (audit: %s)", audit_status)

    yield

    await state.shutdown()
    logger.info("Sentinel SSO API shutdown complete")


#       DEPENDENCY PROVIDERS
# ------------------------------------


def get_settings_dep() -> AppSettings:
    """Dependency for settings - allows override in tests."""
    return get_settings()


SettingsDep = Annotated[AppSettings, Depends(get_settings_dep)]


def get_sso_service(
    state: Annotated[AppState, Depends(get_app_state)],
) -> SSOService:
    """Dependency for the SSO service."""
    if not state.sso_service:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="SSO service not initialized",
        )
    return state.sso_service


SSOServiceDep = Annotated[SSOService, Depends(get_sso_service)]


#       REQUEST CONTEXT
# ------------------------------------


class RequestContext:
    """
    Request-scoped context carrying the client details recorded on
    sign-in sessions and audit events.
    """

    def __init__(self, request: Request):
        self.request = request

    @property
    def client_ip(self) -> Optional[str]:
        forwarded = self.request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return self.request.client.host if self.request.client else None

    @property
    def user_agent(self) -> Optional[str]:
        return self.request.headers.get("user-agent")

    def to_dict(self) -> dict:
        """Keyword arguments for SSOService calls."""
        return {
            "ip_address": self.client_ip,
            "user_agent": self.user_agent,
        }


async def get_request_context(request: Request) -> RequestContext:
    return RequestContext(request=request)


RequestContextDep = Annotated[RequestContext, Depends(get_request_context)]


#       AUTHENTICATION
# ------------------------------------


async def get_current_active_user(
    request: Request, settings: SettingsDep
) -> UserContext:
    """
    Dependency wrapper for authentication that injects settings.
    """
    return await _get_current_active_user(request, settings)


CurrentUserDep = Annotated[UserContext, Depends(get_current_active_user)]


async def require_admin(user: CurrentUserDep) -> UserContext:
    """Tenant administration requires an owner or admin membership role."""
    if user.role.lower() not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required for this operation",
        )
    return user


AdminUserDep = Annotated[UserContext, Depends(require_admin)]
