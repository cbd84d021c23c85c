from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


#       ENUMS
# ------------------------------


class ProviderType(str, Enum):
    GOOGLE = "oauth2-google"
    MICROSOFT = "oauth2-microsoft"
    OKTA = "oidc-okta"
    OIDC = "oidc-generic"
    SAML = "saml"

    @property
    def protocol(self) -> str:
        return self.value.split("-", 1)[0]


class ProviderStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"


class SessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class DeprovisionReason(str, Enum):
    TOKEN_REVOKED = "token_revoked"
    ADMIN_ACTION = "admin_action"
    WEBHOOK_NOTIFICATION = "webhook_notification"
    SCIM_DELETE = "scim_delete"


DEFAULT_SCOPES = ["openid", "profile", "email"]

DEFAULT_CLAIM_MAPPINGS = {
    "email": "email",
    "first_name": "given_name",
    "last_name": "family_name",
    "display_name": "name",
    "groups": "groups",
}


#       ROLE MAPPING
# ------------------------------


class RoleMapping(BaseModel):
    """Maps one external group or role value to an internal tenant role."""

    source: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)
    # Lower values win
    priority: int = 0


class RoleMappingConfig(BaseModel):
    mappings: List[RoleMapping] = Field(default_factory=list)
    default_role: Optional[str] = None


#       PROVIDER CONFIG
# ------------------------------


class ProviderConfig(BaseModel):
    """Per-tenant identity provider configuration as stored."""

    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    name: str
    provider_type: ProviderType
    status: ProviderStatus = ProviderStatus.INACTIVE

    client_id: Optional[str] = None
    client_secret_encrypted: Optional[str] = None

    issuer_url: Optional[str] = None
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    jwks_url: Optional[str] = None
    logout_url: Optional[str] = None

    scopes: List[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    allowed_domains: List[str] = Field(default_factory=list)

    auto_create_users: bool = True
    auto_link_existing_users: bool = True
    enforce_for_domains: bool = False
    is_default: bool = False

    claim_mappings: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_CLAIM_MAPPINGS)
    )
    role_mapping: RoleMappingConfig = Field(default_factory=RoleMappingConfig)
    # Protocol extras: hosted_domain, azure_tenant_id, okta_domain, idp_entity_id, ...
    metadata: Dict[str, Any] = Field(default_factory=dict)

    verified_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ProviderStatus.ACTIVE

    def allows_domain(self, domain: Optional[str]) -> bool:
        if not self.allowed_domains:
            return True
        if not domain:
            return False
        return domain.lower() in {d.lower() for d in self.allowed_domains}


class ProviderCreate(BaseModel):
    """Protocol parameters accepted when registering a provider."""

    name: str = Field(..., min_length=1, max_length=100)
    provider_type: ProviderType
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    issuer_url: Optional[str] = None
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    jwks_url: Optional[str] = None
    logout_url: Optional[str] = None

    scopes: Optional[List[str]] = None
    allowed_domains: List[str] = Field(default_factory=list)
    auto_create_users: bool = True
    auto_link_existing_users: bool = True
    enforce_for_domains: bool = False
    is_default: bool = False

    claim_mappings: Optional[Dict[str, str]] = None
    role_mapping: RoleMappingConfig = Field(default_factory=RoleMappingConfig)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("allowed_domains")
    @classmethod
    def normalize_domains(cls, v: List[str]) -> List[str]:
        return sorted({d.strip().lower().lstrip("@") for d in v if d.strip()})


class ProviderUpdate(BaseModel):
    """Partial update; unset fields are left unchanged."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    issuer_url: Optional[str] = None
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    jwks_url: Optional[str] = None
    logout_url: Optional[str] = None

    scopes: Optional[List[str]] = None
    allowed_domains: Optional[List[str]] = None
    auto_create_users: Optional[bool] = None
    auto_link_existing_users: Optional[bool] = None
    enforce_for_domains: Optional[bool] = None

    claim_mappings: Optional[Dict[str, str]] = None
    role_mapping: Optional[RoleMappingConfig] = None
    metadata: Optional[Dict[str, Any]] = None


#       AUTH SESSION
# ------------------------------


class AuthSession(BaseModel):
    """Short-lived state for one in-flight federated login."""

    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    provider_id: UUID
    state: str
    # OIDC nonce, or the AuthnRequest ID for SAML
    nonce: str
    code_verifier: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    redirect_uri: str
    return_url: Optional[str] = None
    login_hint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    completed_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


#       IDENTITIES
# ------------------------------


class UserIdentity(BaseModel):
    """Link between an internal user and one external subject at one provider."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    tenant_id: str
    provider_id: UUID
    external_subject_id: str
    external_email: Optional[str] = None
    profile: Dict[str, Any] = Field(default_factory=dict)
    access_token_encrypted: Optional[str] = None
    refresh_token_encrypted: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_revoked(self) -> bool:
        return bool(self.profile.get("revoked"))


class DomainMapping(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    domain: str
    provider_id: UUID
    verified: bool = False
    verified_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class User(BaseModel):
    """Internal platform user as seen by the SSO subsystem."""

    id: UUID = Field(default_factory=uuid4)
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class TenantMembership(BaseModel):
    user_id: UUID
    tenant_id: str
    role: str
    is_active: bool = True
    updated_at: datetime = Field(default_factory=utcnow)


#       FLOW VALUES
# ------------------------------


class ExternalProfile(BaseModel):
    """Identity asserted by the IdP, normalized across protocols."""

    external_subject_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    groups: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    # Organization domain asserted by the IdP itself (e.g. Google "hd")
    hosted_domain: Optional[str] = None
    session_index: Optional[str] = None
    raw_attributes: Dict[str, Any] = Field(default_factory=dict)

    @property
    def email_domain(self) -> Optional[str]:
        if "@" not in self.email:
            return None
        return self.email.rsplit("@", 1)[1].lower()

    @property
    def account_domain(self) -> Optional[str]:
        if self.hosted_domain:
            return self.hosted_domain.lower()
        return self.email_domain

    def snapshot(self) -> Dict[str, Any]:
        return {
            "display_name": self.display_name,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "groups": self.groups,
            "roles": self.roles,
            "session_index": self.session_index,
            "raw_attributes": self.raw_attributes,
        }


class TokenSet(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None


class AuthorizationRequest(BaseModel):
    url: str
    state: str
    relay_state: Optional[str] = None
    session_id: UUID


class ProvisioningResult(BaseModel):
    user: User
    identity: UserIdentity
    membership: TenantMembership
    assigned_role: str
    is_new_user: bool


class CallbackResult(BaseModel):
    user: User
    tenant_id: str
    provider_id: UUID
    identity: UserIdentity
    tokens: TokenSet
    assigned_role: str
    is_new_user: bool
    return_url: Optional[str] = None


class LogoutResult(BaseModel):
    """Outcome of a message received on the single logout endpoint."""

    tenant_id: str
    provider_id: UUID
    user_id: Optional[UUID] = None
    redirect_url: Optional[str] = None


class AuthMethodCheck(BaseModel):
    allow_local_auth: bool
    sso_required: bool
    provider: Optional[ProviderConfig] = None


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    details: Optional[Dict[str, Any]] = None
