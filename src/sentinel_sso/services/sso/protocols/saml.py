"""
SAML 2.0 Web Browser SSO: HTTP-Redirect AuthnRequest out, HTTP-POST Response in,
and single logout over the HTTP-Redirect binding.

Responses are parsed with a hardened lxml parser and their XML signature is
verified with signxml against the IdP certificate. Only the subtree covered
by the signature is read for identity data.
"""

import base64
import logging
import re
import textwrap
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote_plus

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree
from signxml import XMLVerifier
from signxml.exceptions import SignXMLException

from sentinel_sso.config import SSOSettings
from sentinel_sso.exceptions import (
    AssertionExpiredError,
    ConfigurationError,
    InvalidAssertionError,
    InvalidIssuerError,
)
from ..challenges import generate_saml_request_id, generate_state
from ..schemas import (
    AuthorizationRequest,
    AuthSession,
    ConnectionTestResult,
    ExternalProfile,
    ProviderConfig,
    ProviderType,
    TokenSet,
    utcnow,
)
from .base import CallbackPayload, Challenge, SSOProtocol, append_query, require_https

logger = logging.getLogger(__name__)

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"
NS = {"samlp": SAMLP_NS, "saml": SAML_NS, "md": MD_NS, "ds": DS_NS}

BINDING_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
BINDING_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
NAMEID_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"

SIG_ALG_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
_REDIRECT_SIGNATURE_HASHES = {
    SIG_ALG_RSA_SHA256: hashes.SHA256,
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512": hashes.SHA512,
}

# Attribute names used by common IdPs (Azure AD, ADFS, Okta, OneLogin)
_ATTRIBUTE_ALIASES: Dict[str, List[str]] = {
    "email": [
        "email",
        "mail",
        "emailAddress",
        "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
    ],
    "first_name": [
        "firstName",
        "givenName",
        "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname",
    ],
    "last_name": [
        "lastName",
        "sn",
        "surname",
        "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname",
    ],
    "display_name": [
        "displayName",
        "name",
        "http://schemas.microsoft.com/identity/claims/displayname",
    ],
    "groups": [
        "groups",
        "memberOf",
        "http://schemas.microsoft.com/ws/2008/06/identity/claims/groups",
    ],
    "roles": [
        "roles",
        "role",
        "http://schemas.microsoft.com/ws/2008/06/identity/claims/role",
    ],
}

_parser = etree.XMLParser(
    resolve_entities=False, no_network=True, huge_tree=False, remove_blank_text=False
)


#       XML HELPERS
# ------------------------------


def pem_certificate(value: Optional[str]) -> Optional[str]:
    """Normalize a bare base64 certificate body or PEM block to PEM."""
    if not value:
        return None
    body = "".join(
        line.strip()
        for line in value.strip().splitlines()
        if line.strip() and "CERTIFICATE" not in line
    )
    if not body:
        return None
    wrapped = "\n".join(textwrap.wrap(body, 64))
    return f"-----BEGIN CERTIFICATE-----\n{wrapped}\n-----END CERTIFICATE-----\n"


def parse_xml(data: bytes) -> etree._Element:
    try:
        root = etree.fromstring(data, parser=_parser)
    except etree.XMLSyntaxError:
        raise InvalidAssertionError("SAML document is not well-formed XML")
    if root.getroottree().docinfo.doctype:
        raise InvalidAssertionError("SAML documents must not carry a DOCTYPE")
    return root


_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    normalized = value.strip()
    # xs:dateTime allows any number of fractional digits, fromisoformat 3 or 6
    normalized = _FRACTION_RE.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"), normalized, count=1
    )
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        raise InvalidAssertionError("Malformed SAML timestamp")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_instant(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _text(element: Optional[etree._Element], path: str) -> Optional[str]:
    if element is None:
        return None
    node = element.find(path, NS)
    if node is None or node.text is None:
        return None
    return node.text.strip() or None


def deflate_and_encode(xml: bytes) -> str:
    """Raw DEFLATE + base64, as required by the HTTP-Redirect binding."""
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
    deflated = compressor.compress(xml) + compressor.flush()
    return base64.b64encode(deflated).decode("ascii")


def decode_and_inflate(encoded: str) -> bytes:
    return zlib.decompress(base64.b64decode(encoded), -15)


#       SP METADATA & LOGOUT
# ------------------------------


def generate_sp_metadata(settings: SSOSettings, name_id_format: str = NAMEID_EMAIL) -> str:
    """Service-provider EntityDescriptor to hand to IdP administrators."""
    descriptor = etree.Element(
        etree.QName(MD_NS, "EntityDescriptor"),
        nsmap={"md": MD_NS},
        entityID=settings.sp_entity_id,
    )
    sp = etree.SubElement(
        descriptor,
        etree.QName(MD_NS, "SPSSODescriptor"),
        AuthnRequestsSigned="false",
        WantAssertionsSigned="true",
        protocolSupportEnumeration=SAMLP_NS,
    )
    etree.SubElement(
        sp,
        etree.QName(MD_NS, "SingleLogoutService"),
        Binding=BINDING_REDIRECT,
        Location=settings.slo_url,
    )
    etree.SubElement(sp, etree.QName(MD_NS, "NameIDFormat")).text = name_id_format
    etree.SubElement(
        sp,
        etree.QName(MD_NS, "AssertionConsumerService"),
        Binding=BINDING_POST,
        Location=settings.acs_url,
        index="0",
        isDefault="true",
    )
    return etree.tostring(descriptor, xml_declaration=True, encoding="UTF-8").decode()


def build_logout_request(
    provider: ProviderConfig,
    settings: SSOSettings,
    name_id: str,
    session_index: Optional[str] = None,
    relay_state: Optional[str] = None,
) -> str:
    """Redirect URL carrying a LogoutRequest to the IdP's SLO endpoint."""
    if not provider.logout_url:
        raise ConfigurationError(
            "Provider has no single logout URL", details={"field": "logout_url"}
        )

    request = etree.Element(
        etree.QName(SAMLP_NS, "LogoutRequest"),
        nsmap={"samlp": SAMLP_NS, "saml": SAML_NS},
        ID=generate_saml_request_id(),
        Version="2.0",
        IssueInstant=format_instant(utcnow()),
        Destination=provider.logout_url,
    )
    etree.SubElement(request, etree.QName(SAML_NS, "Issuer")).text = settings.sp_entity_id
    name_id_el = etree.SubElement(
        request,
        etree.QName(SAML_NS, "NameID"),
        Format=provider.metadata.get("name_id_format") or NAMEID_EMAIL,
    )
    name_id_el.text = name_id
    if session_index:
        etree.SubElement(request, etree.QName(SAMLP_NS, "SessionIndex")).text = session_index

    params = {"SAMLRequest": deflate_and_encode(etree.tostring(request))}
    if relay_state:
        params["RelayState"] = relay_state
    return append_query(provider.logout_url, params)


@dataclass
class RedirectMessage:
    """A SAMLRequest or SAMLResponse received over the HTTP-Redirect binding."""

    parameter: str
    root: etree._Element
    relay_state: Optional[str]
    sig_alg: Optional[str]
    signature: Optional[bytes]
    signed_octets: bytes

    @property
    def is_request(self) -> bool:
        return self.parameter == "SAMLRequest"

    @property
    def issuer(self) -> Optional[str]:
        return _text(self.root, "saml:Issuer")


@dataclass
class IdpLogoutRequest:
    request_id: Optional[str]
    name_id: str
    session_index: Optional[str]


def parse_redirect_message(query: str) -> RedirectMessage:
    """
    Decode the SAML message carried in a raw query string.

    The signature covers the parameters exactly as the sender URL-encoded
    them, so the signed octets are rebuilt from the undecoded values.
    """
    raw: Dict[str, str] = {}
    for part in (query or "").split("&"):
        name, separator, value = part.partition("=")
        if separator and name not in raw:
            raw[name] = value

    parameter = "SAMLRequest" if "SAMLRequest" in raw else "SAMLResponse"
    if parameter not in raw:
        raise InvalidAssertionError("No SAML message in request")
    try:
        document = decode_and_inflate(unquote_plus(raw[parameter]))
    except (ValueError, zlib.error):
        raise InvalidAssertionError("SAML message is not valid deflated base64")

    signature = None
    if "Signature" in raw:
        try:
            signature = base64.b64decode(unquote_plus(raw["Signature"]), validate=True)
        except ValueError:
            raise InvalidAssertionError("SAML signature is not valid base64")

    signed_octets = "&".join(
        f"{name}={raw[name]}"
        for name in (parameter, "RelayState", "SigAlg")
        if name in raw
    )
    return RedirectMessage(
        parameter=parameter,
        root=parse_xml(document),
        relay_state=unquote_plus(raw["RelayState"]) if "RelayState" in raw else None,
        sig_alg=unquote_plus(raw["SigAlg"]) if "SigAlg" in raw else None,
        signature=signature,
        signed_octets=signed_octets.encode("utf-8"),
    )


def parse_idp_metadata(xml: str) -> Dict[str, Optional[str]]:
    """
    Extract what a SAML provider needs from an IdP EntityDescriptor.

    Returns entity_id, sso_url (HTTP-Redirect binding preferred), slo_url and
    the first signing certificate.
    """
    root = parse_xml(xml.encode("utf-8") if isinstance(xml, str) else xml)
    if root.tag == etree.QName(MD_NS, "EntitiesDescriptor"):
        root = root.find("md:EntityDescriptor", NS)
    if root is None or root.tag != etree.QName(MD_NS, "EntityDescriptor"):
        raise ConfigurationError("Document is not SAML IdP metadata")

    idp = root.find("md:IDPSSODescriptor", NS)
    if idp is None:
        raise ConfigurationError("Metadata has no IDPSSODescriptor")

    def _location(tag: str) -> Optional[str]:
        services = idp.findall(f"md:{tag}", NS)
        for binding in (BINDING_REDIRECT, BINDING_POST):
            for service in services:
                if service.get("Binding") == binding:
                    return service.get("Location")
        return services[0].get("Location") if services else None

    certificate = None
    for key in idp.findall("md:KeyDescriptor", NS):
        if key.get("use") in (None, "signing"):
            certificate = _text(key, ".//ds:X509Certificate")
            if certificate:
                break

    return {
        "entity_id": root.get("entityID"),
        "sso_url": _location("SingleSignOnService"),
        "slo_url": _location("SingleLogoutService"),
        "certificate": certificate,
    }


#       PROTOCOL
# ------------------------------


class SamlProtocol(SSOProtocol):
    """
    SAML provider. `authorization_url` holds the IdP SSO URL, `logout_url` the
    SLO URL; `metadata` carries `idp_entity_id` and `idp_certificate`.
    """

    provider_types = (ProviderType.SAML,)

    @classmethod
    def validate_config(cls, provider: ProviderConfig) -> None:
        require_https(provider.authorization_url, "authorization_url")
        if not provider.metadata.get("idp_entity_id"):
            raise ConfigurationError(
                "idp_entity_id is required", details={"field": "idp_entity_id"}
            )
        if not pem_certificate(provider.metadata.get("idp_certificate")):
            raise ConfigurationError(
                "idp_certificate is required", details={"field": "idp_certificate"}
            )

    #        AuthnRequest
    # -------------------------------
    def create_challenge(self) -> Challenge:
        return Challenge(state=generate_state(), nonce=generate_saml_request_id())

    def authn_request_xml(self, session: AuthSession) -> bytes:
        request = etree.Element(
            etree.QName(SAMLP_NS, "AuthnRequest"),
            nsmap={"samlp": SAMLP_NS, "saml": SAML_NS},
            ID=session.nonce,
            Version="2.0",
            IssueInstant=format_instant(session.created_at),
            Destination=self.provider.authorization_url,
            ProtocolBinding=BINDING_POST,
            AssertionConsumerServiceURL=self.settings.acs_url,
        )
        etree.SubElement(request, etree.QName(SAML_NS, "Issuer")).text = (
            self.settings.sp_entity_id
        )
        etree.SubElement(
            request,
            etree.QName(SAMLP_NS, "NameIDPolicy"),
            Format=self.provider.metadata.get("name_id_format") or NAMEID_EMAIL,
            AllowCreate="true",
        )
        return etree.tostring(request)

    async def build_authorization_request(
        self, session: AuthSession
    ) -> AuthorizationRequest:
        relay_state = f"{self.provider.id}:{session.state}"
        url = append_query(
            self.provider.authorization_url,
            {
                "SAMLRequest": deflate_and_encode(self.authn_request_xml(session)),
                "RelayState": relay_state,
            },
        )
        return AuthorizationRequest(
            url=url, state=session.state, relay_state=relay_state, session_id=session.id
        )

    #        Response
    # -------------------------------
    async def complete(
        self, session: AuthSession, payload: CallbackPayload
    ) -> Tuple[ExternalProfile, TokenSet]:
        if not payload.saml_response:
            raise InvalidAssertionError("SAMLResponse is missing")
        try:
            document = base64.b64decode(payload.saml_response, validate=True)
        except ValueError:
            raise InvalidAssertionError("SAMLResponse is not valid base64")

        root = parse_xml(document)
        if root.tag != etree.QName(SAMLP_NS, "Response"):
            raise InvalidAssertionError("Document is not a SAML Response")

        signed = self.verify_signature(root)
        if signed.tag == etree.QName(SAMLP_NS, "Response"):
            response: Optional[etree._Element] = signed
            assertion = signed.find("saml:Assertion", NS)
        elif signed.tag == etree.QName(SAML_NS, "Assertion"):
            response = None
            assertion = signed
        else:
            raise InvalidAssertionError("Signature does not cover the response or assertion")
        if assertion is None:
            raise InvalidAssertionError("SAML Response carries no assertion")

        # Status is read from the outer document; a failure there is never trusted as success
        status = root.find("samlp:Status/samlp:StatusCode", NS)
        if status is None or status.get("Value") != STATUS_SUCCESS:
            raise InvalidAssertionError(
                "Identity provider did not report success",
                details={"status": status.get("Value") if status is not None else None},
            )

        self._check_destination(response)
        self._check_in_response_to(response, assertion, session)
        self._check_issuer(assertion)
        self._check_conditions(assertion)

        return self.map_profile(assertion), TokenSet()

    def verify_signature(self, root: etree._Element) -> etree._Element:
        certificate = pem_certificate(self.provider.metadata.get("idp_certificate"))
        if not certificate:
            raise ConfigurationError(
                "SAML provider has no IdP certificate", status_code=500
            )
        try:
            result = XMLVerifier().verify(
                root, x509_cert=certificate, expect_references=1
            )
        except (SignXMLException, InvalidSignature, ValueError) as e:
            logger.info(
                "SAML signature rejected",
                extra={"provider_id": str(self.provider.id), "error": str(e)},
            )
            raise InvalidAssertionError("SAML signature is invalid")
        return result.signed_xml

    def _check_destination(self, response: Optional[etree._Element]) -> None:
        if response is None:
            return
        destination = response.get("Destination")
        if destination and destination != self.settings.acs_url:
            raise InvalidAssertionError("SAML Response was sent to a different endpoint")

    def _check_in_response_to(
        self,
        response: Optional[etree._Element],
        assertion: etree._Element,
        session: AuthSession,
    ) -> None:
        candidates = []
        if response is not None and response.get("InResponseTo"):
            candidates.append(response.get("InResponseTo"))
        for data in assertion.findall(
            "saml:Subject/saml:SubjectConfirmation/saml:SubjectConfirmationData", NS
        ):
            if data.get("InResponseTo"):
                candidates.append(data.get("InResponseTo"))

        if not candidates or any(value != session.nonce for value in candidates):
            raise InvalidAssertionError("SAML Response does not answer this sign-in request")

    def _check_issuer(self, assertion: etree._Element) -> None:
        issuer = _text(assertion, "saml:Issuer")
        if issuer != self.provider.metadata.get("idp_entity_id"):
            raise InvalidIssuerError(details={"issuer": issuer})

    def _check_conditions(self, assertion: etree._Element) -> None:
        now = utcnow()
        skew = timedelta(seconds=self.settings.clock_skew_seconds)

        conditions = assertion.find("saml:Conditions", NS)
        if conditions is not None:
            not_before = parse_instant(conditions.get("NotBefore"))
            if not_before and now + skew < not_before:
                raise AssertionExpiredError("Identity assertion is not yet valid")
            not_on_or_after = parse_instant(conditions.get("NotOnOrAfter"))
            if not_on_or_after and now - skew >= not_on_or_after:
                raise AssertionExpiredError()

            audiences = [
                (node.text or "").strip()
                for node in conditions.findall(
                    "saml:AudienceRestriction/saml:Audience", NS
                )
            ]
            if audiences and self.settings.sp_entity_id not in audiences:
                raise InvalidAssertionError("SAML assertion is for a different audience")

        for data in assertion.findall(
            "saml:Subject/saml:SubjectConfirmation/saml:SubjectConfirmationData", NS
        ):
            expiry = parse_instant(data.get("NotOnOrAfter"))
            if expiry and now - skew >= expiry:
                raise AssertionExpiredError()

    #        Single logout
    # -------------------------------
    def verify_redirect_signature(self, message: RedirectMessage) -> None:
        if message.signature is None:
            raise InvalidAssertionError("SAML logout message is not signed")
        algorithm = _REDIRECT_SIGNATURE_HASHES.get(message.sig_alg or "")
        if algorithm is None:
            raise InvalidAssertionError(
                "Unsupported SAML signature algorithm",
                details={"sig_alg": message.sig_alg},
            )
        certificate = pem_certificate(self.provider.metadata.get("idp_certificate"))
        if not certificate:
            raise ConfigurationError(
                "SAML provider has no IdP certificate", status_code=500
            )
        try:
            public_key = x509.load_pem_x509_certificate(
                certificate.encode("ascii")
            ).public_key()
            public_key.verify(
                message.signature,
                message.signed_octets,
                padding.PKCS1v15(),
                algorithm(),
            )
        except (InvalidSignature, ValueError, TypeError) as e:
            logger.info(
                "SAML redirect signature rejected",
                extra={"provider_id": str(self.provider.id), "error": type(e).__name__},
            )
            raise InvalidAssertionError("SAML signature is invalid")

    def _check_logout_message(self, root: etree._Element, tag: str) -> None:
        if root.tag != etree.QName(SAMLP_NS, tag):
            raise InvalidAssertionError(f"Document is not a SAML {tag}")
        destination = root.get("Destination")
        if destination and destination != self.settings.slo_url:
            raise InvalidAssertionError(f"SAML {tag} was sent to a different endpoint")
        self._check_issuer(root)

    def read_logout_request(self, message: RedirectMessage) -> IdpLogoutRequest:
        """Verify an IdP-initiated LogoutRequest. It must carry a signature."""
        self.verify_redirect_signature(message)
        root = message.root
        self._check_logout_message(root, "LogoutRequest")

        expiry = parse_instant(root.get("NotOnOrAfter"))
        skew = timedelta(seconds=self.settings.clock_skew_seconds)
        if expiry and utcnow() - skew >= expiry:
            raise AssertionExpiredError("Logout request has expired")

        name_id = _text(root, "saml:NameID")
        if not name_id:
            raise InvalidAssertionError("SAML LogoutRequest has no NameID")
        return IdpLogoutRequest(
            request_id=root.get("ID"),
            name_id=name_id,
            session_index=_text(root, "samlp:SessionIndex"),
        )

    def read_logout_response(self, message: RedirectMessage) -> None:
        """Check the IdP's answer to a logout this service started."""
        if message.signature is not None:
            self.verify_redirect_signature(message)
        root = message.root
        self._check_logout_message(root, "LogoutResponse")

        status = root.find("samlp:Status/samlp:StatusCode", NS)
        if status is None or status.get("Value") != STATUS_SUCCESS:
            raise InvalidAssertionError(
                "Identity provider did not complete logout",
                details={"status": status.get("Value") if status is not None else None},
            )

    def logout_response_url(
        self, in_response_to: Optional[str], relay_state: Optional[str] = None
    ) -> str:
        """Redirect URL carrying a successful LogoutResponse back to the IdP."""
        if not self.provider.logout_url:
            raise ConfigurationError(
                "Provider has no single logout URL", details={"field": "logout_url"}
            )
        attributes = {
            "ID": generate_saml_request_id(),
            "Version": "2.0",
            "IssueInstant": format_instant(utcnow()),
            "Destination": self.provider.logout_url,
        }
        if in_response_to:
            attributes["InResponseTo"] = in_response_to

        response = etree.Element(
            etree.QName(SAMLP_NS, "LogoutResponse"),
            nsmap={"samlp": SAMLP_NS, "saml": SAML_NS},
            **attributes,
        )
        etree.SubElement(response, etree.QName(SAML_NS, "Issuer")).text = (
            self.settings.sp_entity_id
        )
        status = etree.SubElement(response, etree.QName(SAMLP_NS, "Status"))
        etree.SubElement(status, etree.QName(SAMLP_NS, "StatusCode"), Value=STATUS_SUCCESS)

        return append_query(
            self.provider.logout_url,
            {
                "SAMLResponse": deflate_and_encode(etree.tostring(response)),
                "RelayState": relay_state,
            },
        )

    #        Attribute mapping
    # -------------------------------
    @staticmethod
    def extract_attributes(assertion: etree._Element) -> Dict[str, List[str]]:
        attributes: Dict[str, List[str]] = {}
        for attribute in assertion.findall(
            "saml:AttributeStatement/saml:Attribute", NS
        ):
            name = attribute.get("Name")
            if not name:
                continue
            values = [
                value.text.strip()
                for value in attribute.findall("saml:AttributeValue", NS)
                if value.text and value.text.strip()
            ]
            attributes.setdefault(name, []).extend(values)
        return attributes

    def _lookup(self, attributes: Dict[str, List[str]], field_name: str) -> List[str]:
        names = list(_ATTRIBUTE_ALIASES.get(field_name, []))
        configured = self.provider.claim_mappings.get(field_name)
        if configured:
            names.insert(0, configured)
        for name in names:
            if attributes.get(name):
                return attributes[name]
        return []

    def _first(self, attributes: Dict[str, List[str]], field_name: str) -> Optional[str]:
        values = self._lookup(attributes, field_name)
        return values[0] if values else None

    def map_profile(self, assertion: etree._Element) -> ExternalProfile:
        name_id = _text(assertion, "saml:Subject/saml:NameID")
        if not name_id:
            raise InvalidAssertionError("SAML assertion has no NameID")

        attributes = self.extract_attributes(assertion)
        email = self._first(attributes, "email")
        if not email and "@" in name_id:
            email = name_id
        if not email:
            raise InvalidAssertionError("SAML assertion carries no email address")

        authn = assertion.find("saml:AuthnStatement", NS)
        return ExternalProfile(
            external_subject_id=name_id,
            email=email.strip().lower(),
            first_name=self._first(attributes, "first_name"),
            last_name=self._first(attributes, "last_name"),
            display_name=self._first(attributes, "display_name"),
            groups=self._lookup(attributes, "groups"),
            roles=self._lookup(attributes, "roles"),
            session_index=authn.get("SessionIndex") if authn is not None else None,
            raw_attributes=attributes,
        )

    #        Diagnostics
    # -------------------------------
    async def test_connection(self) -> ConnectionTestResult:
        sso_url = self.provider.authorization_url or ""
        if not sso_url.startswith("https://"):
            return ConnectionTestResult(
                success=False, message="SAML SSO URL must use HTTPS"
            )
        details: Dict[str, Any] = {
            "sso_url": sso_url,
            "entity_id": self.provider.metadata.get("idp_entity_id"),
            "sp_entity_id": self.settings.sp_entity_id,
            "acs_url": self.settings.acs_url,
        }
        return ConnectionTestResult(
            success=True, message="SAML configuration looks valid", details=details
        )
