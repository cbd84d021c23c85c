from .deprovisioning import Deprovisioner
from .discovery import DomainDiscovery
from .protocols import ProtocolContext, build_protocol
from .provisioning import IdentityProvisioner
from .registry import ProviderRegistry, mask_secret
from .repository import ISSORepository
from .roles import resolve_role
from .service import SSOService
from .sessions import AuthSessionManager

__all__ = [
    "Deprovisioner",
    "DomainDiscovery",
    "ProtocolContext",
    "build_protocol",
    "IdentityProvisioner",
    "ProviderRegistry",
    "mask_secret",
    "ISSORepository",
    "resolve_role",
    "SSOService",
    "AuthSessionManager",
]
