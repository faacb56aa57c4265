"""
Error taxonomy for the SSO session and credential lifecycle.
All errors raised by the auth and credentials packages derive from SsoError.
"""

from typing import Optional


class SsoError(Exception):
    """Base class for SSO session errors."""
    pass


class ConfigurationError(SsoError):
    """Raised when region, start URL or client registration is missing."""
    pass


class ProviderError(SsoError):
    """Raised for any unhandled error reported by the identity or portal API."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class RateLimited(ProviderError):
    """Raised when provider-side throttling persists after local retries."""
    pass


class AuthenticationExpired(SsoError):
    """
    Raised when the bearer token is invalid, expired or unauthorized.
    The message shown to users is always the same; provider detail is kept
    on `detail` for logging.
    """

    USER_MESSAGE = "Session expired, please log in again"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(self.USER_MESSAGE)
        self.detail = detail


class PollingTimedOut(SsoError):
    """Raised when the device authorization was never approved in time."""
    pass


class LoginCancelled(SsoError):
    """Raised when a login attempt was superseded by a newer login or a logout."""
    pass
