from .services.crypto import SecretCipher
from .services.database import DatabaseManager
from .services.audit import (
    AuditChannel,
    AuditService,
    EventOutcome,
    SSOAction,
    SSOAuditEntry,
)
from .services.sso import (
    SSOService,
    build_protocol,
    resolve_role,
)
from .services.sso.schemas import (
    CallbackResult,
    ExternalProfile,
    ProviderConfig,
    ProviderCreate,
    ProviderType,
)

__all__ = [
    "SecretCipher",
    "DatabaseManager",
    "AuditChannel",
    "AuditService",
    "EventOutcome",
    "SSOAction",
    "SSOAuditEntry",
    "SSOService",
    "build_protocol",
    "resolve_role",
    "CallbackResult",
    "ExternalProfile",
    "ProviderConfig",
    "ProviderCreate",
    "ProviderType",
]
