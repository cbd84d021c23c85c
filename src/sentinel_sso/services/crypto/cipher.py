"""
Authenticated encryption for provider client secrets and user tokens at rest.

Ciphertext layout (urlsafe base64 of the whole buffer):

    version (1 byte) | iv (12 bytes) | tag (16 bytes) | payload

The key is derived from the operator secret with PBKDF2-HMAC-SHA256 once per
SecretCipher instance and reused for the instance lifetime.
"""

import base64
import binascii
import os
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from sentinel_sso.exceptions import ConfigurationError, DecryptionError


_VERSION = 1
_IV_LENGTH = 12
_TAG_LENGTH = 16
_KEY_LENGTH = 32
_KDF_ITERATIONS = 200_000
_DEFAULT_SALT = b"sentinel-sso/secret-cipher/v1"


class SecretCipher:
    """AES-256-GCM cipher keyed from a process-wide secret."""

    def __init__(
        self,
        secret: str,
        salt: bytes = _DEFAULT_SALT,
        iterations: int = _KDF_ITERATIONS,
    ):
        if not secret:
            raise ConfigurationError(
                "Encryption secret is not configured", status_code=500
            )
        self._secret = secret.encode("utf-8")
        self._salt = salt
        self._iterations = iterations
        self._key: Optional[bytes] = None

    @property
    def _aead(self) -> AESGCM:
        if self._key is None:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=_KEY_LENGTH,
                salt=self._salt,
                iterations=self._iterations,
            )
            self._key = kdf.derive(self._secret)
        return AESGCM(self._key)

    def encrypt(self, plaintext: Union[str, bytes]) -> str:
        """Encrypt a value and return a self-contained ciphertext token."""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        iv = os.urandom(_IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext, None)
        payload, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]

        token = bytes([_VERSION]) + iv + tag + payload
        return base64.urlsafe_b64encode(token).decode("ascii")

    def decrypt_bytes(self, ciphertext: Union[str, bytes]) -> bytes:
        """Decrypt a ciphertext token produced by encrypt()."""
        if isinstance(ciphertext, str):
            try:
                ciphertext = ciphertext.encode("ascii")
            except UnicodeEncodeError as e:
                raise DecryptionError("Ciphertext is not ASCII") from e
        if not ciphertext:
            raise DecryptionError("Ciphertext is empty")

        try:
            raw = base64.urlsafe_b64decode(ciphertext)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Ciphertext is not valid base64") from e

        header = 1 + _IV_LENGTH + _TAG_LENGTH
        if len(raw) < header:
            raise DecryptionError("Ciphertext is truncated")
        if raw[0] != _VERSION:
            raise DecryptionError(f"Unsupported ciphertext version: {raw[0]}")

        iv = raw[1 : 1 + _IV_LENGTH]
        tag = raw[1 + _IV_LENGTH : header]
        payload = raw[header:]

        try:
            return self._aead.decrypt(iv, payload + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Ciphertext failed authentication") from e

    def decrypt(self, ciphertext: Union[str, bytes]) -> str:
        return self.decrypt_bytes(ciphertext).decode("utf-8")

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return self.encrypt(plaintext) if plaintext is not None else None

    def decrypt_optional(self, ciphertext: Optional[str]) -> Optional[str]:
        return self.decrypt(ciphertext) if ciphertext else None
