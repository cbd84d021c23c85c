"""
Random challenge values for federated sign-in: state, nonce, PKCE pairs and
SAML request ids. Every value comes from the `secrets` CSPRNG and is meant
to be used once.
"""

import base64
import hashlib
import secrets
import uuid
from typing import NamedTuple


_TOKEN_BYTES = 32


class PKCEPair(NamedTuple):
    code_verifier: str
    code_challenge: str
    method: str = "S256"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


def generate_nonce() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


def build_code_challenge(code_verifier: str) -> str:
    """S256 transform: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_pkce_pair() -> PKCEPair:
    verifier = _b64url(secrets.token_bytes(_TOKEN_BYTES))
    return PKCEPair(code_verifier=verifier, code_challenge=build_code_challenge(verifier))


def generate_saml_request_id() -> str:
    # xs:ID values must not start with a digit
    return f"_{uuid.uuid4().hex}"
