"""Provider boundary errors."""


class MalformedPayload(Exception):
    """Raised when a provider payload cannot be normalized.

    Required fields (sender identity, timestamp, content) are missing after
    all provider-specific fallbacks. The delivery is dropped, not retried.
    """

    pass


class SignatureInvalid(Exception):
    """Raised when webhook HMAC verification fails."""

    pass


class ProviderUnavailable(Exception):
    """Raised when an outbound provider call fails (network or non-2xx)."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
