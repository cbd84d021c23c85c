"""
FastAPI application factory for the Sentinel SSO API.

Run with:
    uvicorn sentinel_sso.api.app:app
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sentinel_sso.config import get_settings
from .dependencies import app_lifespan
from .exception_handlers import register_exception_handlers
from .routes import health_router_root, sso_router


def create_application() -> FastAPI:
    settings = get_settings()

    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)

    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=app_lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.allow_origins,
        allow_credentials=settings.cors.allow_credentials,
        allow_methods=settings.cors.allow_methods,
        allow_headers=settings.cors.allow_headers,
    )

    register_exception_handlers(application)

    application.include_router(health_router_root)
    application.include_router(sso_router)

    return application


app = create_application()
