from typing import Any, Dict, Optional


#       BASE EXCEPTIONS
# ------------------------------


class SentinelError(Exception):
    """
    Base exception for all Sentinel SSO errors.
    """

    def __init__(
        self,
        message: str,
        code: str = "SENTINEL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


#       CONFIGURATION EXCEPTIONS
# -------------------------------------


class ConfigurationError(SentinelError):
    """Raised when provider or application configuration is invalid."""

    def __init__(self, message: str = "Invalid configuration", **kwargs):
        kwargs.setdefault("status_code", 400)
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            **kwargs,
        )


class ProviderNotFoundError(SentinelError):
    """Raised when an SSO provider does not exist."""

    def __init__(self, message: str = "SSO provider not found", **kwargs):
        super().__init__(
            message=message,
            code="PROVIDER_NOT_FOUND",
            status_code=404,
            **kwargs,
        )


class ProviderNotActiveError(SentinelError):
    """Raised when a login is attempted through an inactive provider."""

    def __init__(self, message: str = "SSO provider is not active", **kwargs):
        super().__init__(
            message=message,
            code="PROVIDER_NOT_ACTIVE",
            status_code=409,
            **kwargs,
        )


#       SESSION EXCEPTIONS
# ------------------------------

SIGN_IN_AGAIN = "Your sign-in attempt is no longer valid. Please try signing in again."


class InvalidOrExpiredSessionError(SentinelError):
    """Raised when an authentication session cannot satisfy a callback."""

    def __init__(
        self,
        message: str = SIGN_IN_AGAIN,
        code: str = "INVALID_OR_EXPIRED_SESSION",
        **kwargs,
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=400,
            **kwargs,
        )


class InvalidSessionError(InvalidOrExpiredSessionError):
    """Raised when the session is unknown or has already been used."""

    def __init__(self, message: str = SIGN_IN_AGAIN, **kwargs):
        super().__init__(message=message, code="INVALID_SESSION", **kwargs)


class SessionExpiredError(InvalidOrExpiredSessionError):
    """Raised when the session is past its expiry."""

    def __init__(self, message: str = SIGN_IN_AGAIN, **kwargs):
        super().__init__(message=message, code="SESSION_EXPIRED", **kwargs)


class ProviderMismatchError(SentinelError):
    """Raised when the callback provider disagrees with the session provider."""

    def __init__(self, message: str = SIGN_IN_AGAIN, **kwargs):
        super().__init__(
            message=message,
            code="PROVIDER_MISMATCH",
            status_code=400,
            **kwargs,
        )


#       POLICY EXCEPTIONS
# ------------------------------


class DomainNotAllowedError(SentinelError):
    """Raised when the asserted account's domain is outside the allow-list."""

    def __init__(
        self,
        message: str = "Your account's domain is not allowed to sign in with this provider",
        **kwargs,
    ):
        super().__init__(
            message=message,
            code="DOMAIN_NOT_ALLOWED",
            status_code=403,
            **kwargs,
        )


class AutoProvisioningDisabledError(SentinelError):
    """Raised when no matching user exists and the provider may not create one."""

    def __init__(
        self,
        message: str = "No account exists for this identity. Ask your administrator to invite you.",
        **kwargs,
    ):
        super().__init__(
            message=message,
            code="AUTO_PROVISIONING_DISABLED",
            status_code=403,
            **kwargs,
        )


#       UPSTREAM EXCEPTIONS
# ------------------------------


class TokenExchangeFailedError(SentinelError):
    """Raised when the identity provider rejects or fails a token request."""

    def __init__(
        self, message: str = "Sign-in with your identity provider failed", **kwargs
    ):
        super().__init__(
            message=message,
            code="TOKEN_EXCHANGE_FAILED",
            status_code=502,
            **kwargs,
        )


class InvalidAssertionError(SentinelError):
    """Raised when an ID token or SAML assertion cannot be trusted or parsed."""

    def __init__(
        self,
        message: str = "Invalid identity assertion",
        code: str = "INVALID_ASSERTION",
        **kwargs,
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=400,
            **kwargs,
        )


class InvalidIssuerError(InvalidAssertionError):
    """Raised when the assertion issuer is not the configured IdP."""

    def __init__(self, message: str = "Unexpected assertion issuer", **kwargs):
        super().__init__(message=message, code="INVALID_ISSUER", **kwargs)


class AssertionExpiredError(InvalidAssertionError):
    """Raised when the assertion validity window has passed."""

    def __init__(self, message: str = "Identity assertion has expired", **kwargs):
        super().__init__(message=message, code="ASSERTION_EXPIRED", **kwargs)


#       INTEGRITY EXCEPTIONS
# ------------------------------


class DecryptionError(SentinelError):
    """Raised when a stored secret cannot be decrypted or fails authentication."""

    def __init__(self, message: str = "Stored secret could not be decrypted", **kwargs):
        super().__init__(
            message=message,
            code="DECRYPTION_ERROR",
            status_code=500,
            **kwargs,
        )


#       DATABASE EXCEPTIONS
# ----------------------------------


class DatabaseError(SentinelError):
    """Raised when a database operation fails."""

    def __init__(self, message: str = "Database operation failed", **kwargs):
        super().__init__(
            message=message,
            code="DATABASE_ERROR",
            status_code=500,
            **kwargs,
        )


class IdentityNotFoundError(SentinelError):
    """Raised when a linked identity does not exist."""

    def __init__(self, message: str = "Linked identity not found", **kwargs):
        super().__init__(
            message=message,
            code="IDENTITY_NOT_FOUND",
            status_code=404,
            **kwargs,
        )


class DomainMappingNotFoundError(SentinelError):
    """Raised when a domain mapping does not exist."""

    def __init__(self, message: str = "Domain mapping not found", **kwargs):
        super().__init__(
            message=message,
            code="DOMAIN_MAPPING_NOT_FOUND",
            status_code=404,
            **kwargs,
        )
