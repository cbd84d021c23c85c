from .audit_database import AuditDatabaseManager
from .audit_service import AuditService, IAuditService
from .channel import AuditChannel
from .schemas import EventOutcome, SSOAction, SSOAuditEntry

__all__ = [
    "AuditDatabaseManager",
    "AuditService",
    "IAuditService",
    "AuditChannel",
    "EventOutcome",
    "SSOAction",
    "SSOAuditEntry",
]
