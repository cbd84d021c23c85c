"""
Home Realm Discovery: route an email address to its tenant's SSO provider
through verified domain mappings.
"""

import logging
from typing import Dict, List, Optional
from uuid import UUID

from sentinel_sso.exceptions import ConfigurationError, DomainMappingNotFoundError
from sentinel_sso.services.audit import AuditChannel, SSOAction, SSOAuditEntry
from .registry import ProviderRegistry
from .repository import ISSORepository
from .schemas import AuthMethodCheck, DomainMapping, ProviderConfig, utcnow

logger = logging.getLogger(__name__)


def email_domain(email: str) -> Optional[str]:
    if not email or "@" not in email:
        return None
    domain = email.strip().rsplit("@", 1)[1].lower()
    return domain or None


def normalize_domain(domain: str) -> str:
    normalized = (domain or "").strip().lower().lstrip("@")
    if not normalized or "." not in normalized or " " in normalized:
        raise ConfigurationError("Invalid domain", details={"field": "domain"})
    return normalized


class DomainDiscovery:
    def __init__(
        self,
        repository: ISSORepository,
        registry: ProviderRegistry,
        audit: AuditChannel,
    ):
        self.repository = repository
        self.registry = registry
        self.audit = audit

    def find_provider_by_domain(
        self, tenant_id: str, email: str
    ) -> Optional[ProviderConfig]:
        """Active provider behind a verified mapping for the email's domain."""
        domain = email_domain(email)
        if domain is None:
            return None

        mapping = self.repository.get_domain_mapping(tenant_id, domain)
        if mapping is None or not mapping.verified:
            return None

        provider = self.repository.get_provider(mapping.provider_id)
        if provider is None or not provider.is_active:
            return None
        return provider

    def check_auth_method(self, email: str, tenant_id: str) -> AuthMethodCheck:
        provider = self.find_provider_by_domain(tenant_id, email)
        if provider is None:
            return AuthMethodCheck(allow_local_auth=True, sso_required=False)

        enforced = provider.enforce_for_domains
        return AuthMethodCheck(
            allow_local_auth=not enforced,
            sso_required=enforced,
            provider=provider,
        )

    def available_providers(self, tenant_id: str) -> List[Dict]:
        """Public summary of the tenant's active providers for a login page."""
        return [
            {
                "id": str(provider.id),
                "name": provider.name,
                "provider_type": provider.provider_type.value,
                "is_default": provider.is_default,
            }
            for provider in self.registry.list_for_tenant(tenant_id)
            if provider.is_active
        ]

    #        Domain mappings
    # -------------------------------
    def add_domain_mapping(
        self, tenant_id: str, domain: str, provider_id: UUID
    ) -> DomainMapping:
        provider = self.registry.get_for_tenant(tenant_id, provider_id)
        mapping = self.repository.upsert_domain_mapping(
            DomainMapping(
                tenant_id=tenant_id,
                domain=normalize_domain(domain),
                provider_id=provider.id,
            )
        )
        self.audit.emit(
            SSOAuditEntry(
                tenant_id=tenant_id,
                provider_id=provider.id,
                action=SSOAction.DOMAIN_MAPPED,
                metadata={"domain": mapping.domain},
            )
        )
        return mapping

    def verify_domain_mapping(self, tenant_id: str, domain: str) -> DomainMapping:
        mapping = self.repository.get_domain_mapping(tenant_id, normalize_domain(domain))
        if mapping is None:
            raise DomainMappingNotFoundError(details={"domain": domain})

        mapping = self.repository.upsert_domain_mapping(
            mapping.model_copy(update={"verified": True, "verified_at": utcnow()})
        )
        logger.info(
            "Domain mapping verified",
            extra={"tenant_id": tenant_id, "domain": mapping.domain},
        )
        self.audit.emit(
            SSOAuditEntry(
                tenant_id=tenant_id,
                provider_id=mapping.provider_id,
                action=SSOAction.DOMAIN_VERIFIED,
                metadata={"domain": mapping.domain},
            )
        )
        return mapping

    def remove_domain_mapping(self, tenant_id: str, domain: str) -> None:
        domain = normalize_domain(domain)
        if not self.repository.delete_domain_mapping(tenant_id, domain):
            raise DomainMappingNotFoundError(details={"domain": domain})
        self.audit.emit(
            SSOAuditEntry(
                tenant_id=tenant_id,
                action=SSOAction.DOMAIN_UNMAPPED,
                metadata={"domain": domain},
            )
        )

    def list_domain_mappings(self, tenant_id: str) -> List[DomainMapping]:
        return self.repository.list_domain_mappings(tenant_id)
