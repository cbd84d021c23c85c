from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class EventOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class SSOAction(str, Enum):
    # Provider administration
    PROVIDER_CREATED = "sso_provider_created"
    PROVIDER_UPDATED = "sso_provider_updated"
    PROVIDER_ACTIVATED = "sso_provider_activated"
    PROVIDER_DEACTIVATED = "sso_provider_deactivated"
    PROVIDER_DELETED = "sso_provider_deleted"
    PROVIDER_DEFAULT_SET = "sso_provider_default_set"

    # Home Realm Discovery
    DOMAIN_MAPPED = "sso_domain_mapped"
    DOMAIN_VERIFIED = "sso_domain_verified"
    DOMAIN_UNMAPPED = "sso_domain_unmapped"

    # Sign-in
    LOGIN = "sso_login"
    LOGIN_FAILED = "sso_login_failed"
    LOGOUT = "sso_logout"

    # Identity lifecycle
    DEPROVISION = "sso_deprovision"
    IDENTITY_UNLINKED = "sso_identity_unlinked"


#       PYDANTIC MODELS
# ---------------------------------


class SSOAuditEntry(BaseModel):
    """Append-only SSO audit event"""

    tenant_id: Optional[str] = None
    user_id: Optional[UUID] = None
    provider_id: Optional[UUID] = None

    action: SSOAction
    outcome: EventOutcome = EventOutcome.SUCCESS
    error_code: Optional[str] = None

    # Request context
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Retention
    retention_years: int = 7
