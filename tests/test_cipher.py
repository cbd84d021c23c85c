"""
Tests for SecretCipher, the AES-256-GCM cipher for secrets at rest.

Coverage:
- Encrypt/decrypt of text and bytes
- Fresh IV per encryption
- Tamper, truncation and wrong-key detection
- Optional helpers and configuration errors

Test types: Unit, Security
"""

import base64

import pytest

from sentinel_sso.exceptions import ConfigurationError, DecryptionError
from sentinel_sso.services.crypto import SecretCipher


@pytest.fixture(scope="module")
def fast_cipher() -> SecretCipher:
    return SecretCipher("unit-test-secret-value-with-32-characters", iterations=1_000)


@pytest.mark.unit
@pytest.mark.security
class TestSecretCipher:
    def test_decrypt_returns_original_text(self, fast_cipher):
        token = fast_cipher.encrypt("client-secret-💡")
        assert fast_cipher.decrypt(token) == "client-secret-💡"

    def test_empty_string_round_trips(self, fast_cipher):
        token = fast_cipher.encrypt("")
        assert token
        assert fast_cipher.decrypt(token) == ""

    def test_bytes_are_accepted(self, fast_cipher):
        token = fast_cipher.encrypt(b"\x00\x01binary")
        assert fast_cipher.decrypt_bytes(token) == b"\x00\x01binary"

    def test_same_plaintext_encrypts_differently(self, fast_cipher):
        assert fast_cipher.encrypt("same") != fast_cipher.encrypt("same")

    def test_ciphertext_layout_has_version_iv_and_tag(self, fast_cipher):
        raw = base64.urlsafe_b64decode(fast_cipher.encrypt("abc"))
        assert raw[0] == 1
        # version + 12 byte IV + 16 byte tag + 3 byte payload
        assert len(raw) == 1 + 12 + 16 + 3

    def test_tampered_payload_is_rejected(self, fast_cipher):
        raw = bytearray(base64.urlsafe_b64decode(fast_cipher.encrypt("secret")))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptionError):
            fast_cipher.decrypt(base64.urlsafe_b64encode(bytes(raw)).decode())

    def test_tampered_tag_is_rejected(self, fast_cipher):
        raw = bytearray(base64.urlsafe_b64decode(fast_cipher.encrypt("secret")))
        raw[1 + 12] ^= 0xFF
        with pytest.raises(DecryptionError):
            fast_cipher.decrypt(base64.urlsafe_b64encode(bytes(raw)).decode())

    def test_truncated_ciphertext_is_rejected(self, fast_cipher):
        short = base64.urlsafe_b64encode(b"\x01" + b"\x00" * 10).decode()
        with pytest.raises(DecryptionError, match="truncated"):
            fast_cipher.decrypt(short)

    def test_unknown_version_is_rejected(self, fast_cipher):
        raw = bytearray(base64.urlsafe_b64decode(fast_cipher.encrypt("secret")))
        raw[0] = 9
        with pytest.raises(DecryptionError, match="version"):
            fast_cipher.decrypt(base64.urlsafe_b64encode(bytes(raw)).decode())

    def test_garbage_is_rejected(self, fast_cipher):
        with pytest.raises(DecryptionError):
            fast_cipher.decrypt("not base64 at all!!")
        with pytest.raises(DecryptionError):
            fast_cipher.decrypt("")

    def test_other_key_cannot_decrypt(self, fast_cipher):
        other = SecretCipher("another-secret-value-with-32-characters!", iterations=1_000)
        with pytest.raises(DecryptionError):
            other.decrypt(fast_cipher.encrypt("secret"))

    def test_same_secret_and_salt_share_a_key(self, fast_cipher):
        twin = SecretCipher("unit-test-secret-value-with-32-characters", iterations=1_000)
        assert twin.decrypt(fast_cipher.encrypt("shared")) == "shared"

    def test_optional_helpers_pass_none_through(self, fast_cipher):
        assert fast_cipher.encrypt_optional(None) is None
        assert fast_cipher.decrypt_optional(None) is None
        assert fast_cipher.decrypt_optional(fast_cipher.encrypt_optional("x")) == "x"

    def test_missing_secret_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            SecretCipher("")
