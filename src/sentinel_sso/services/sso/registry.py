"""
ProviderRegistry: per-tenant identity provider configuration.

Secrets are encrypted before they reach the repository and are never
returned in clear; every mutation is reported to the audit channel.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from sentinel_sso.exceptions import ConfigurationError, ProviderNotFoundError
from sentinel_sso.services.audit import AuditChannel, SSOAction, SSOAuditEntry
from sentinel_sso.services.crypto import SecretCipher
from .protocols import ProtocolContext, build_protocol, protocol_class
from .repository import ISSORepository
from .schemas import (
    DEFAULT_CLAIM_MAPPINGS,
    DEFAULT_SCOPES,
    ConnectionTestResult,
    ProviderConfig,
    ProviderCreate,
    ProviderStatus,
    ProviderUpdate,
    utcnow,
)

logger = logging.getLogger(__name__)


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Display form of a secret: only the last four characters survive."""
    if not value:
        return None
    if len(value) <= 8:
        return "*" * len(value)
    return f"{'*' * (len(value) - 4)}{value[-4:]}"


class ProviderRegistry:
    def __init__(
        self,
        repository: ISSORepository,
        cipher: SecretCipher,
        audit: AuditChannel,
        context: ProtocolContext,
    ):
        self.repository = repository
        self.cipher = cipher
        self.audit = audit
        self.context = context

    def _emit(
        self,
        action: SSOAction,
        provider: ProviderConfig,
        actor_id: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        self.audit.emit(
            SSOAuditEntry(
                tenant_id=provider.tenant_id,
                provider_id=provider.id,
                action=action,
                metadata={
                    "provider_type": provider.provider_type.value,
                    "actor_id": actor_id,
                    **metadata,
                },
            )
        )

    def _prepare(self, provider: ProviderConfig) -> ProviderConfig:
        variant = protocol_class(provider.provider_type)
        provider = variant.apply_defaults(provider)
        variant.validate_config(provider)
        return provider

    #        Create / read
    # -------------------------------
    def create(
        self, tenant_id: str, params: ProviderCreate, actor_id: Optional[str] = None
    ) -> ProviderConfig:
        if not tenant_id:
            raise ConfigurationError("tenant_id is required")

        fields = params.model_dump(exclude={"client_secret", "scopes", "claim_mappings"})
        provider = ProviderConfig(
            tenant_id=tenant_id,
            status=ProviderStatus.INACTIVE,
            client_secret_encrypted=self.cipher.encrypt_optional(params.client_secret),
            scopes=params.scopes or list(DEFAULT_SCOPES),
            claim_mappings={**DEFAULT_CLAIM_MAPPINGS, **(params.claim_mappings or {})},
            created_by=actor_id,
            **fields,
        )
        provider = self._prepare(provider)

        with self.repository.transaction():
            if provider.is_default:
                self.repository.clear_default_provider(tenant_id)
            provider = self.repository.insert_provider(provider)

        logger.info(
            "SSO provider created",
            extra={
                "tenant_id": tenant_id,
                "provider_id": str(provider.id),
                "provider_type": provider.provider_type.value,
            },
        )
        self._emit(SSOAction.PROVIDER_CREATED, provider, actor_id, name=provider.name)
        return provider

    def get(self, provider_id: UUID) -> ProviderConfig:
        provider = self.repository.get_provider(provider_id)
        if provider is None:
            raise ProviderNotFoundError(details={"provider_id": str(provider_id)})
        return provider

    def get_for_tenant(self, tenant_id: str, provider_id: UUID) -> ProviderConfig:
        provider = self.get(provider_id)
        if provider.tenant_id != tenant_id:
            raise ProviderNotFoundError(details={"provider_id": str(provider_id)})
        return provider

    def list_for_tenant(self, tenant_id: str) -> List[ProviderConfig]:
        providers = self.repository.list_providers(tenant_id)
        return sorted(providers, key=lambda p: (not p.is_default, p.created_at))

    def get_default(self, tenant_id: str) -> Optional[ProviderConfig]:
        for provider in self.list_for_tenant(tenant_id):
            if provider.is_default and provider.is_active:
                return provider
        return None

    #        Mutations
    # -------------------------------
    def update(
        self, provider_id: UUID, changes: ProviderUpdate, actor_id: Optional[str] = None
    ) -> ProviderConfig:
        current = self.get(provider_id)
        update: Dict[str, Any] = changes.model_dump(
            exclude_unset=True, exclude_none=True, exclude={"client_secret"}
        )
        if "allowed_domains" in update:
            update["allowed_domains"] = sorted(
                {d.strip().lower().lstrip("@") for d in update["allowed_domains"] if d.strip()}
            )
        if changes.client_secret:
            update["client_secret_encrypted"] = self.cipher.encrypt(changes.client_secret)
        update["updated_at"] = utcnow()

        merged = {**current.model_dump(), **update}
        variant = protocol_class(current.provider_type)
        if any(
            current.metadata.get(key) != merged["metadata"].get(key)
            for key in variant.endpoint_metadata_keys
        ):
            # Rebuilt by apply_defaults unless the caller set them explicitly
            for field_name in variant.derived_endpoint_fields:
                if field_name not in update:
                    merged[field_name] = None

        provider = self._prepare(ProviderConfig.model_validate(merged))
        provider = self.repository.update_provider(provider)

        self._emit(
            SSOAction.PROVIDER_UPDATED,
            provider,
            actor_id,
            changed_fields=sorted(k for k in update if k != "updated_at"),
        )
        return provider

    def activate(self, provider_id: UUID, actor_id: Optional[str] = None) -> ProviderConfig:
        now = utcnow()
        provider = self.get(provider_id).model_copy(
            update={"status": ProviderStatus.ACTIVE, "verified_at": now, "updated_at": now}
        )
        provider = self.repository.update_provider(provider)
        self._emit(SSOAction.PROVIDER_ACTIVATED, provider, actor_id)
        return provider

    def deactivate(
        self, provider_id: UUID, actor_id: Optional[str] = None
    ) -> ProviderConfig:
        provider = self.get(provider_id).model_copy(
            update={"status": ProviderStatus.INACTIVE, "updated_at": utcnow()}
        )
        provider = self.repository.update_provider(provider)
        self._emit(SSOAction.PROVIDER_DEACTIVATED, provider, actor_id)
        return provider

    def set_default(
        self, provider_id: UUID, actor_id: Optional[str] = None
    ) -> ProviderConfig:
        provider = self.get(provider_id)
        with self.repository.transaction():
            self.repository.clear_default_provider(provider.tenant_id)
            provider = self.repository.update_provider(
                provider.model_copy(update={"is_default": True, "updated_at": utcnow()})
            )
        self._emit(SSOAction.PROVIDER_DEFAULT_SET, provider, actor_id)
        return provider

    def delete(self, provider_id: UUID, actor_id: Optional[str] = None) -> int:
        """Delete a provider and every identity linked through it."""
        provider = self.get(provider_id)
        removed_identities = self.repository.delete_provider(provider_id)
        logger.info(
            "SSO provider deleted",
            extra={
                "tenant_id": provider.tenant_id,
                "provider_id": str(provider_id),
                "removed_identities": removed_identities,
            },
        )
        self._emit(
            SSOAction.PROVIDER_DELETED,
            provider,
            actor_id,
            removed_identities=removed_identities,
        )
        return removed_identities

    def mark_used(self, provider: ProviderConfig) -> None:
        self.repository.touch_provider(provider.id, utcnow())

    #        Diagnostics
    # -------------------------------
    async def test_connection(self, provider_id: UUID) -> ConnectionTestResult:
        provider = self.get(provider_id)
        result = await build_protocol(provider, self.context).test_connection()
        logger.info(
            "SSO provider connection tested",
            extra={
                "provider_id": str(provider_id),
                "provider_type": provider.provider_type.value,
                "success": result.success,
            },
        )
        return result

    def masked_secret(self, provider: ProviderConfig) -> Optional[str]:
        if not provider.client_secret_encrypted:
            return None
        return mask_secret(self.cipher.decrypt(provider.client_secret_encrypted))
