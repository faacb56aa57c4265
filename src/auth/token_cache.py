"""
In-process token cache for the SSO session.
Holds the current bearer token and the registered OAuth client identity.
Durable persistence is handled separately by the session store.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple


logger = logging.getLogger(__name__)


def redact(secret: Optional[str]) -> str:
    """Shorten a secret for logging (first 8 chars)."""
    if not secret:
        return "<none>"
    return f"{secret[:8]}..."


@dataclass(frozen=True)
class ClientRegistration:
    """OAuth client registered with the identity provider."""
    client_id: str
    client_secret: str
    expires_at: Optional[float] = None

    def __repr__(self) -> str:
        return f"ClientRegistration(client_id={self.client_id!r}, client_secret='***')"


@dataclass(frozen=True)
class BearerToken:
    """Access token presented to the portal API."""
    access_token: str
    expires_at: float
    issued_at: float = field(default_factory=time.time)

    @classmethod
    def from_response(cls, response: dict, now: Optional[float] = None) -> "BearerToken":
        """Build a token from a create-token result dict."""
        issued_at = time.time() if now is None else now
        expires_in = int(response.get("expires_in") or 0)
        return cls(
            access_token=response["access_token"],
            issued_at=issued_at,
            expires_at=issued_at + expires_in,
        )

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check the provider's own expiry (informational only)."""
        now = time.time() if now is None else now
        return now >= self.expires_at

    def __repr__(self) -> str:
        return (
            f"BearerToken(access_token={redact(self.access_token)!r}, "
            f"issued_at={self.issued_at}, expires_at={self.expires_at})"
        )


class TokenCache:
    """
    Process-wide holder of the bearer token and client registration.
    Thread-safe; every read and write is atomic.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._token: Optional[BearerToken] = None
        self._registration: Optional[ClientRegistration] = None

    def get(self) -> Optional[BearerToken]:
        """Current bearer token or None."""
        with self._lock:
            return self._token

    def set(self, token: BearerToken):
        """Replace the current bearer token (last writer wins)."""
        with self._lock:
            previous = self._token
            self._token = token

        if previous is not None and previous.access_token != token.access_token:
            logger.info(
                f"Bearer token superseded: {redact(previous.access_token)} -> "
                f"{redact(token.access_token)}"
            )
        else:
            logger.info(f"Bearer token cached: {redact(token.access_token)}")

    def get_client_registration(self) -> Optional[ClientRegistration]:
        """Registered OAuth client or None."""
        with self._lock:
            return self._registration

    def set_client_registration(self, registration: ClientRegistration):
        """Store the registered OAuth client."""
        with self._lock:
            self._registration = registration
        logger.info(f"Client registration cached: {registration.client_id}")

    def snapshot(self) -> Tuple[Optional[BearerToken], Optional[ClientRegistration]]:
        """Read token and registration together."""
        with self._lock:
            return self._token, self._registration

    def clear(self, include_registration: bool = True):
        """
        Remove the bearer token and, unless told otherwise, the client
        registration in one step.

        Args:
            include_registration: False keeps the registration (token renewal)
        """
        with self._lock:
            had_token = self._token is not None
            self._token = None
            if include_registration:
                self._registration = None

        if had_token:
            logger.info("Bearer token cleared")
        if include_registration:
            logger.debug("Client registration cleared")
