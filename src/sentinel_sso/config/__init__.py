from .settings import (
    AppSettings,
    DatabaseSettings,
    AuditSettings,
    SecuritySettings,
    SSOSettings,
    CORSSettings,
    get_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "AuditSettings",
    "SecuritySettings",
    "SSOSettings",
    "CORSSettings",
    "get_settings",
]
