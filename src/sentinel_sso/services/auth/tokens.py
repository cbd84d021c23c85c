"""
Platform access tokens.
Minted after a successful federated sign-in and verified on every
authenticated API call.

"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from authlib.jose import JoseError, jwt
from fastapi import HTTPException, Request, status

from sentinel_sso.config import AppSettings
from .schemas import UserContext

ADMIN_ROLES = frozenset({"owner", "admin"})


def create_access_token(
    data: dict,
    settings: AppSettings,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token with the provided data.

    Args:
        data: Payload to encode (sub, user_id, tenant_id, role, provider_id)
        settings: Application settings containing security configuration
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token as string
    """
    to_encode = data.copy()

    now = datetime.now(timezone.utc)
    expire = now + (
        expires_delta
        or timedelta(minutes=settings.security.access_token_expire_minutes)
    )
    to_encode.update({"iat": int(now.timestamp()), "exp": int(expire.timestamp())})

    encoded_jwt = jwt.encode(
        {"alg": settings.security.algorithm}, to_encode, settings.security.secret_key
    )
    return encoded_jwt.decode("utf-8")


def verify_token(token: str, settings: AppSettings) -> UserContext:
    """
    Verify and decode a platform access token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        claims = jwt.decode(token, settings.security.secret_key)
        claims.validate()

        return UserContext(
            user_id=claims["user_id"],
            email=claims["sub"],
            tenant_id=claims["tenant_id"],
            role=claims["role"],
            provider_id=claims.get("provider_id"),
        )
    except (JoseError, KeyError, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_active_user(
    request: Request, settings: AppSettings
) -> UserContext:
    """Extract and validate the bearer token on a request."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return verify_token(auth_header.split(" ", 1)[1], settings)
