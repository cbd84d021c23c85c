from .cipher import SecretCipher

__all__ = ["SecretCipher"]
