from .schemas import TokenResponse, UserContext
from .tokens import (
    ADMIN_ROLES,
    create_access_token,
    get_current_active_user,
    verify_token,
)

__all__ = [
    "TokenResponse",
    "UserContext",
    "ADMIN_ROLES",
    "create_access_token",
    "get_current_active_user",
    "verify_token",
]
