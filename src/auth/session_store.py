"""
Durable session storage using the system keyring.
Session records are encrypted with Fernet before being written and are
never stored as plaintext.
"""

import base64
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Dict, Any

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from src.auth.session_timer import SESSION_DURATION
from src.auth.token_cache import BearerToken, ClientRegistration


logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    """Authoritative record of an authenticated session."""
    bearer_token: BearerToken
    session_started_at: float
    session_duration_limit: float = SESSION_DURATION
    region: Optional[str] = None
    start_url: Optional[str] = None
    client_registration: Optional[ClientRegistration] = None

    @property
    def session_expires_at(self) -> float:
        return self.session_started_at + self.session_duration_limit

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check the fixed session window."""
        now = time.time() if now is None else now
        return now >= self.session_expires_at

    def to_dict(self) -> Dict[str, Any]:
        registration = None
        if self.client_registration is not None:
            registration = {
                "client_id": self.client_registration.client_id,
                "client_secret": self.client_registration.client_secret,
                "expires_at": self.client_registration.expires_at,
            }
        return {
            "bearer_token": {
                "access_token": self.bearer_token.access_token,
                "issued_at": self.bearer_token.issued_at,
                "expires_at": self.bearer_token.expires_at,
            },
            "session_started_at": self.session_started_at,
            "session_duration_limit": self.session_duration_limit,
            "region": self.region,
            "start_url": self.start_url,
            "client_registration": registration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        registration = data.get("client_registration")
        return cls(
            bearer_token=BearerToken(**data["bearer_token"]),
            session_started_at=float(data["session_started_at"]),
            session_duration_limit=float(
                data.get("session_duration_limit", SESSION_DURATION)
            ),
            region=data.get("region"),
            start_url=data.get("start_url"),
            client_registration=(
                ClientRegistration(**registration) if registration else None
            ),
        )


class KeychainSessionStore:
    """
    Session store backed by the system keyring.
    Records are encrypted before being stored.
    """

    KEYCHAIN_SERVICE = "com.awsssoswitcher.session"
    KEYCHAIN_USERNAME = "session-record"
    SALT = b'aws-sso-switcher-session-salt'

    def __init__(self, app_name: str = "aws-sso-switcher"):
        """
        Initialize session store.

        Args:
            app_name: Application name for keyring service
        """
        self.app_name = app_name
        self.service_name = f"{self.KEYCHAIN_SERVICE}.{app_name}"

        self._cipher = Fernet(self._derive_key())

        logger.info(f"Session store initialized for {app_name}")

    def _derive_key(self) -> bytes:
        """
        Derive the encryption key from the app name and machine identity.
        Uses PBKDF2-HMAC-SHA256 for key derivation.
        """
        password = f"{self.app_name}-{uuid.getnode():012x}".encode()

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.SALT,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password))

    def _encrypt(self, data: str) -> str:
        return self._cipher.encrypt(data.encode()).decode()

    def _decrypt(self, encrypted: str) -> str:
        return self._cipher.decrypt(encrypted.encode()).decode()

    def save(self, record: SessionRecord) -> bool:
        """
        Save the session record to the keyring.

        Returns:
            True if successful
        """
        try:
            encrypted = self._encrypt(json.dumps(record.to_dict()))
            keyring.set_password(
                service_name=self.service_name,
                username=self.KEYCHAIN_USERNAME,
                password=encrypted
            )
        except KeyringError as e:
            logger.error(f"Failed to save session record: {e}")
            return False

        logger.info(f"Session record saved (started at {record.session_started_at:.0f})")
        return True

    def load(self) -> Optional[SessionRecord]:
        """
        Load the session record from the keyring.

        Returns:
            SessionRecord or None if absent or unreadable
        """
        try:
            encrypted = keyring.get_password(
                service_name=self.service_name,
                username=self.KEYCHAIN_USERNAME
            )
        except KeyringError as e:
            logger.error(f"Failed to read session record: {e}")
            return None

        if not encrypted:
            logger.debug("No session record found")
            return None

        try:
            data = json.loads(self._decrypt(encrypted))
            return SessionRecord.from_dict(data)
        except (InvalidToken, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable session record: {e}")
            return None

    def clear(self):
        """Delete the session record. Missing records are ignored."""
        try:
            keyring.delete_password(
                service_name=self.service_name,
                username=self.KEYCHAIN_USERNAME
            )
            logger.info("Session record deleted")
        except PasswordDeleteError:
            logger.debug("No session record to delete")
        except KeyringError as e:
            logger.error(f"Failed to delete session record: {e}")


class MemorySessionStore:
    """Session store kept in process memory (no persistence across restarts)."""

    def __init__(self):
        self._record: Optional[SessionRecord] = None

    def save(self, record: SessionRecord) -> bool:
        self._record = record
        return True

    def load(self) -> Optional[SessionRecord]:
        return self._record

    def clear(self):
        self._record = None
