from typing import Dict, Type

from ..schemas import ProviderConfig, ProviderType
from .base import (
    CallbackPayload,
    Challenge,
    DocumentCache,
    ProtocolContext,
    SSOProtocol,
)
from .oauth import GoogleProtocol, MicrosoftProtocol, OAuth2Protocol
from .oidc import OidcProtocol, OktaProtocol
from .saml import (
    SamlProtocol,
    build_logout_request,
    generate_sp_metadata,
    parse_idp_metadata,
    parse_redirect_message,
)

PROTOCOLS: Dict[ProviderType, Type[SSOProtocol]] = {
    ProviderType.GOOGLE: GoogleProtocol,
    ProviderType.MICROSOFT: MicrosoftProtocol,
    ProviderType.OKTA: OktaProtocol,
    ProviderType.OIDC: OidcProtocol,
    ProviderType.SAML: SamlProtocol,
}


def protocol_class(provider_type: ProviderType) -> Type[SSOProtocol]:
    return PROTOCOLS[ProviderType(provider_type)]


def build_protocol(provider: ProviderConfig, context: ProtocolContext) -> SSOProtocol:
    """Select the protocol variant for a provider once, by its type."""
    return protocol_class(provider.provider_type)(provider, context)


__all__ = [
    "CallbackPayload",
    "Challenge",
    "DocumentCache",
    "ProtocolContext",
    "SSOProtocol",
    "OAuth2Protocol",
    "GoogleProtocol",
    "MicrosoftProtocol",
    "OidcProtocol",
    "OktaProtocol",
    "SamlProtocol",
    "PROTOCOLS",
    "protocol_class",
    "build_protocol",
    "generate_sp_metadata",
    "build_logout_request",
    "parse_idp_metadata",
    "parse_redirect_message",
]
