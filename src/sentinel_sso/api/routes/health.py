from datetime import datetime, timezone

from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from sentinel_sso.api.dependencies import SettingsDep, get_app_state
from sentinel_sso.api.schemas import DetailedHealthResponse, HealthResponse


router = APIRouter(tags=["Health"])


@router.get("/")
async def root():
    return {"message": "Welcome to Sentinel SSO API"}


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: SettingsDep):
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
        audit_enabled=settings.audit.enabled,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/health/ready", response_model=DetailedHealthResponse)
async def readiness_check(settings: SettingsDep):
    """
    Readiness of the pieces a sign-in needs: the SSO store, the service
    wiring and the audit writer. A full audit queue shows up as drops.
    """
    state = get_app_state()

    db_connected = state.db is not None and await run_in_threadpool(state.db.ping)
    sso_ready = state.sso_service is not None
    channel = state.audit_channel
    audit_running = channel is not None and channel.is_running

    components = {
        "database": {
            "status": "healthy" if db_connected else "unhealthy",
            "connected": db_connected,
        },
        "sso": {
            "status": "healthy" if sso_ready else "unhealthy",
            "initialized": sso_ready,
            "base_url": settings.sso.base_url,
        },
        "audit": {
            "status": "healthy" if audit_running else "unhealthy",
            "enabled": settings.audit.enabled,
            "pending": channel.pending if channel else 0,
            "dropped": channel.dropped if channel else 0,
        },
    }
    ready = all(c["status"] == "healthy" for c in components.values())

    return DetailedHealthResponse(
        status="healthy" if ready else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        audit_enabled=settings.audit.enabled,
        timestamp=datetime.now(timezone.utc),
        components=components,
    )


@router.get("/health/live")
async def liveness_check():
    return {"status": "alive"}
