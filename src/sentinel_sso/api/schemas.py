from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from sentinel_sso.services.sso.schemas import (
    DeprovisionReason,
    ProviderConfig,
    ProviderType,
    RoleMappingConfig,
)


class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, str_strip_whitespace=True)


class TimestampMixin(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


#           PROVIDERS
# ---------------------------


class ProviderResponse(BaseSchema, TimestampMixin):
    """Provider configuration as shown to tenant admins; the secret is masked."""

    id: UUID
    tenant_id: str
    name: str
    provider_type: ProviderType
    status: str
    is_default: bool
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    issuer_url: Optional[str] = None
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    jwks_url: Optional[str] = None
    logout_url: Optional[str] = None
    scopes: List[str]
    allowed_domains: List[str]
    auto_create_users: bool
    auto_link_existing_users: bool
    enforce_for_domains: bool
    claim_mappings: Dict[str, str]
    role_mapping: RoleMappingConfig
    metadata: Dict[str, Any]
    verified_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_provider(
        cls, provider: ProviderConfig, masked_secret: Optional[str]
    ) -> "ProviderResponse":
        data = provider.model_dump(exclude={"client_secret_encrypted", "created_by"})
        data["status"] = provider.status.value
        data["client_secret"] = masked_secret
        return cls.model_validate(data)


class ProviderDeleteResponse(BaseSchema):
    provider_id: UUID
    deleted_identities: int


#           DOMAINS
# ---------------------------


class DomainMappingRequest(BaseSchema):
    domain: str = Field(..., min_length=3, max_length=253)
    provider_id: UUID


class DomainMappingResponse(BaseSchema):
    id: UUID
    domain: str
    provider_id: UUID
    verified: bool
    verified_at: Optional[datetime] = None
    created_at: datetime


#           SIGN-IN
# ---------------------------


class InitiateRequest(BaseSchema):
    tenant_id: str = Field(..., min_length=1)
    provider_id: UUID
    redirect_uri: Optional[str] = None
    return_url: Optional[str] = None
    login_hint: Optional[EmailStr] = None


class InitiateResponse(BaseSchema):
    authorization_url: str
    state: str
    relay_state: Optional[str] = None


class DiscoverRequest(BaseSchema):
    tenant_id: str = Field(..., min_length=1)
    email: EmailStr


class ProviderSummary(BaseSchema):
    id: UUID
    name: str
    provider_type: ProviderType
    is_default: bool = False


class DiscoverResponse(BaseSchema):
    sso_available: bool
    provider: Optional[ProviderSummary] = None


class AuthMethodResponse(BaseSchema):
    allow_local_auth: bool
    sso_required: bool
    provider: Optional[ProviderSummary] = None


class CallbackResponse(BaseSchema):
    """Outcome of a completed federated sign-in."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: UUID
    email: EmailStr
    tenant_id: str
    provider_id: UUID
    role: str
    is_new_user: bool
    return_url: Optional[str] = None


#           IDENTITIES
# ---------------------------


class DeprovisionRequest(BaseSchema):
    provider_id: UUID
    external_subject_id: str = Field(..., min_length=1)
    reason: DeprovisionReason = DeprovisionReason.ADMIN_ACTION


class ScimDeprovisionRequest(BaseSchema):
    provider_id: UUID
    scim_user_id: str = Field(..., min_length=1)
    action: str = Field(default="delete", pattern="^(delete|deactivate)$")


class DeprovisionResponse(BaseSchema):
    deprovisioned: bool
    identity_id: Optional[UUID] = None


class IdentityResponse(BaseSchema):
    id: UUID
    provider_id: UUID
    external_email: Optional[str] = None
    last_login_at: Optional[datetime] = None
    login_count: int
    created_at: datetime


#           HEALTH CHECK
# -----------------------------------


class HealthResponse(BaseSchema):
    status: str = "healthy"
    version: str
    environment: str
    audit_enabled: bool
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DetailedHealthResponse(HealthResponse):
    components: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


#           ERROR
# ---------------------------


class ErrorResponse(BaseSchema):
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None
