"""
Centralized Configuration Management using Pydantic Settings.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = "localhost"
    port: int = 5432
    database: str = Field(alias="POSTGRES_DB", default="sentinel_sso")
    user: str = "postgres"
    password: str = ""
    min_pool_size: int = Field(default=2, ge=1, le=20)
    max_pool_size: int = Field(default=10, ge=2, le=100)

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class SecuritySettings(BaseSettings):
    """Security-related settings."""

    model_config = SettingsConfigDict(populate_by_name=True)

    secret_key: str = Field(alias="SECRET_KEY")
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters")
        return v


class SSOSettings(BaseSettings):
    """Federated sign-on settings."""

    model_config = SettingsConfigDict(env_prefix="SSO_")

    # Public base URL of this service, used for the SAML SP entity id and ACS URL
    base_url: str = "http://localhost:8000"
    # Secret the provider/token cipher key is derived from (falls back to SECRET_KEY)
    encryption_key: Optional[str] = None

    session_ttl_minutes: int = Field(default=10, ge=1, le=60)
    http_timeout_seconds: float = Field(default=10.0, gt=0)
    discovery_timeout_seconds: float = Field(default=5.0, gt=0)
    clock_skew_seconds: int = Field(default=120, ge=0, le=600)
    baseline_role: str = "member"

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) < 32:
            raise ValueError("SSO_ENCRYPTION_KEY must be at least 32 characters")
        return v

    @property
    def sp_entity_id(self) -> str:
        return f"{self.base_url.rstrip('/')}/saml/metadata"

    @property
    def acs_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/sso/saml/acs"

    @property
    def slo_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/sso/saml/slo"


class AuditSettings(BaseSettings):
    """Audit logging configuration."""

    enabled: bool = Field(default=False, alias="ENABLE_AUDIT_LOGGING")
    retention_years: int = Field(default=7, ge=1, le=20)
    queue_size: int = Field(default=1000, ge=1, alias="AUDIT_QUEUE_SIZE")


class CORSSettings(BaseSettings):
    """CORS configuration."""

    allow_origins: list[str] = ["*"]
    allow_credentials: bool = True
    allow_methods: list[str] = ["GET", "POST", "PATCH", "DELETE"]
    allow_headers: list[str] = ["*"]


class AppSettings(BaseSettings):
    """
    Main application settings aggregating all configuration.

    Usage:
        settings = get_settings()
        print(settings.sso.acs_url)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application metadata
    app_name: str = "Sentinel SSO API"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = Field(default="development", alias="APP_ENV")

    # Nested settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    security: SecuritySettings = Field(
        default_factory=lambda: SecuritySettings(
            secret_key="change-me-in-production-32-chars"
        )
    )
    sso: SSOSettings = Field(default_factory=SSOSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    cors: CORSSettings = Field(default_factory=CORSSettings)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def encryption_secret(self) -> str:
        return self.sso.encryption_key or self.security.secret_key


@lru_cache
def get_settings() -> AppSettings:
    """
    Cached settings factory.

    The @lru_cache ensures settings are loaded only once.
    For testing, use dependency injection override.
    """
    return AppSettings()
