"""Error taxonomy shared by the validator, provider adapters and dispatcher."""

from __future__ import annotations


class InvalidationError(Exception):
    """Base error for everything that can go wrong while purging a CDN."""

    kind = "error"
    retryable = False

    def __init__(self, message: str = "", *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(InvalidationError):
    """Empty or malformed path input, rejected before any network call."""

    kind = "validation"


class AuthenticationError(InvalidationError):
    """The provider rejected our credentials."""

    kind = "authentication"


class RateLimitError(InvalidationError):
    """The provider asked us to slow down."""

    kind = "rate_limit"
    retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class TransientNetworkError(InvalidationError):
    """Timeouts, connection failures and 5xx responses."""

    kind = "transient_network"
    retryable = True


class ProviderError(InvalidationError):
    """Permanent provider-side rejection (unknown distribution, bad request)."""

    kind = "provider"


class SerializationError(InvalidationError):
    """A batch could not be put on the wire. Always a bug upstream of the adapter."""

    kind = "serialization"


class ProviderConfigError(InvalidationError):
    """The configured provider settings are incomplete or unreadable."""

    kind = "configuration"
