"""
Exception handlers for the Sentinel SSO API.

Every error leaves the service in the same envelope:
{"error": CODE, "message": ..., "request_id": ..., "details": {...}}.
Sign-in failures keep their stable SSO code so login pages can branch on it.
"""

import logging
import traceback
from typing import Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sentinel_sso.config import get_settings
from sentinel_sso.exceptions import SentinelError

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    429: "TOO_MANY_REQUESTS",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}

INTERNAL_MESSAGE = "An unexpected error occurred. Please try again later."


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid4())


def create_error_response(
    request_id: str,
    error: str,
    message: str,
    status_code: int,
    details: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Create a standardized error response."""
    content = {
        "error": error,
        "message": message,
        "request_id": request_id,
    }
    if details:
        content["details"] = details

    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer", **(headers or {})}

    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def sentinel_exception_handler(
    request: Request,
    exc: SentinelError,
) -> JSONResponse:
    """
    Handle all SentinelError exceptions.

    Client-side SSO failures are returned with their code and user-facing
    message. Server-side ones (storage, key material) keep their code but
    not their message or details.
    """
    request_id = _request_id(request)
    log_extra = {
        "request_id": request_id,
        "error_code": exc.code,
        "path": request.url.path,
        "provider_id": exc.details.get("provider_id"),
    }

    if exc.status_code >= 500:
        logger.error(
            "SSO server error: %s", exc.code,
            extra={**log_extra, "error_message": exc.message},
        )
        return create_error_response(
            request_id=request_id,
            error=exc.code,
            message=INTERNAL_MESSAGE,
            status_code=exc.status_code,
        )

    logger.warning("SSO error: %s", exc.code, extra=log_extra)
    return create_error_response(
        request_id=request_id,
        error=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details or None,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    request_id = _request_id(request)

    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

    logger.info(
        "Validation error on %s",
        request.url.path,
        extra={"request_id": request_id, "errors": errors},
    )

    return create_error_response(
        request_id=request_id,
        error="VALIDATION_ERROR",
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"validation_errors": errors},
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    return create_error_response(
        request_id=_request_id(request),
        error=HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    request_id = _request_id(request)

    logger.error(
        "Unhandled exception: %s",
        type(exc).__name__,
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=True,
    )

    details = None
    if get_settings().debug:
        details = {
            "exception_type": type(exc).__name__,
            "traceback": traceback.format_exception(exc),
        }

    return create_error_response(
        request_id=request_id,
        error="INTERNAL_ERROR",
        message=INTERNAL_MESSAGE,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        details=details,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SentinelError, sentinel_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
