"""
Credential broker for the SSO portal API.
Lists accounts and roles for a bearer token and exchanges
(account, role) pairs for temporary role credentials, with per-family
rate limiting, a settle delay after each call and bounded retry on
provider throttling.
"""

import time
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from src.auth.exceptions import ProviderError, RateLimited
from src.auth.rate_limiter import RateLimiter
from src.auth.token_cache import redact


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Account:
    account_id: str
    account_name: Optional[str] = None
    email_address: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Account":
        return cls(
            account_id=payload["accountId"],
            account_name=payload.get("accountName"),
            email_address=payload.get("emailAddress"),
        )


@dataclass(frozen=True)
class Role:
    role_name: str
    account_id: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], account_id: str) -> "Role":
        return cls(
            role_name=payload["roleName"],
            account_id=payload.get("accountId", account_id),
        )


@dataclass(frozen=True)
class RoleCredentials:
    """Temporary credentials for one role in one account. Never persisted."""
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime
    account_id: str
    role_name: str

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        account_id: str,
        role_name: str
    ) -> "RoleCredentials":
        # expiration is epoch milliseconds
        expiration_ms = payload.get("expiration") or 0
        return cls(
            access_key_id=payload["accessKeyId"],
            secret_access_key=payload["secretAccessKey"],
            session_token=payload["sessionToken"],
            expiration=datetime.fromtimestamp(expiration_ms / 1000, tz=timezone.utc),
            account_id=account_id,
            role_name=role_name,
        )

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expiration

    def as_env(self, region: str) -> Dict[str, str]:
        """Environment variables consumed by downstream tools."""
        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_SESSION_TOKEN": self.session_token,
            "AWS_REGION": region,
            "AWS_DEFAULT_REGION": region,
        }

    def __repr__(self) -> str:
        return (
            f"RoleCredentials(account_id={self.account_id!r}, role_name={self.role_name!r}, "
            f"access_key_id={self.access_key_id!r}, expiration={self.expiration.isoformat()})"
        )


@dataclass
class BrokerConfig:
    """Broker rate limit and retry configuration."""
    accounts_interval_ms: int = 2000
    roles_interval_ms: int = 2000
    credentials_interval_ms: int = 1000
    settle_delay: float = 1.0
    throttle_delay: float = 5.0
    max_throttle_retries: int = 3
    page_size: Optional[int] = 100


class CredentialBroker:
    """
    Exchanges a bearer token for entitlements and role credentials.
    The token is always passed in by the caller; the broker holds no
    session state.
    """

    def __init__(self, portal_provider, config: Optional[BrokerConfig] = None):
        """
        Initialize credential broker.

        Args:
            portal_provider: Portal client (list_accounts, list_account_roles,
                get_role_credentials)
            config: Rate limit and retry configuration
        """
        self.provider = portal_provider
        self.config = config or BrokerConfig()

        self.accounts_limiter = RateLimiter(self.config.accounts_interval_ms, name="accounts")
        self.roles_limiter = RateLimiter(self.config.roles_interval_ms, name="roles")
        self.credentials_limiter = RateLimiter(
            self.config.credentials_interval_ms, name="credentials"
        )

    def _call_with_retry(self, operation: str, func: Callable, *args, **kwargs):
        """Call func, retrying on provider throttling up to max_throttle_retries."""
        retries = self.config.max_throttle_retries

        for attempt in range(retries + 1):
            try:
                return func(*args, **kwargs)
            except RateLimited as e:
                if attempt >= retries:
                    logger.error(f"{operation} still throttled after {retries} retries")
                    raise RateLimited(
                        f"{operation} throttled after {retries} retries: {e}",
                        code=e.code
                    ) from e
                logger.warning(
                    f"{operation} rate limited, waiting {self.config.throttle_delay}s "
                    f"before retry ({attempt + 1}/{retries})"
                )
                time.sleep(self.config.throttle_delay)

    def _settle(self):
        if self.config.settle_delay > 0:
            time.sleep(self.config.settle_delay)

    def _paginate(
        self,
        operation: str,
        limiter: RateLimiter,
        fetch: Callable[[Optional[str]], Dict[str, Any]],
        key: str
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []

        with limiter.hold():
            page_token: Optional[str] = None
            pages = 0
            while True:
                page = self._call_with_retry(operation, fetch, page_token)
                items.extend(page.get(key) or [])
                pages += 1

                page_token = page.get("next_page_token")
                if not page_token:
                    break

            logger.debug(f"{operation}: {len(items)} items in {pages} pages")
            self._settle()

        return items

    def list_accounts(self, access_token: str) -> List[Account]:
        """
        List every account the token is entitled to, in server order.

        Raises:
            AuthenticationExpired: Token rejected by the portal
            RateLimited: Throttling persisted after retries
            ProviderError: Any other provider error
        """
        logger.info(f"Listing accounts with token {redact(access_token)}")

        def fetch(page_token):
            return self.provider.list_accounts(
                access_token, page_token=page_token, page_size=self.config.page_size
            )

        payloads = self._paginate("ListAccounts", self.accounts_limiter, fetch, "accounts")
        accounts = [Account.from_payload(p) for p in payloads]

        logger.info(f"Retrieved {len(accounts)} accounts")
        return accounts

    def list_roles(self, access_token: str, account_id: str) -> List[Role]:
        """List every role the token may assume in one account."""
        logger.info(f"Listing roles for account {account_id}")

        def fetch(page_token):
            return self.provider.list_account_roles(
                access_token, account_id,
                page_token=page_token, page_size=self.config.page_size
            )

        payloads = self._paginate("ListAccountRoles", self.roles_limiter, fetch, "roles")
        roles = [Role.from_payload(p, account_id) for p in payloads]

        logger.info(f"Retrieved {len(roles)} roles for account {account_id}")
        return roles

    def get_credentials(self, access_token: str, account_id: str, role_name: str) -> RoleCredentials:
        """
        Exchange the token for temporary credentials of one role.

        Raises:
            ProviderError: If the provider returns no credentials payload
        """
        logger.info(f"Getting role credentials for account {account_id} with role {role_name}")

        with self.credentials_limiter.hold():
            payload = self._call_with_retry(
                "GetRoleCredentials",
                self.provider.get_role_credentials,
                access_token, account_id, role_name
            )
            if not payload:
                raise ProviderError("No role credentials returned", code="NoRoleCredentials")

            try:
                credentials = RoleCredentials.from_payload(payload, account_id, role_name)
            except (KeyError, TypeError, ValueError) as e:
                raise ProviderError(
                    f"Malformed role credentials payload: missing or invalid {e}",
                    code="MalformedRoleCredentials"
                ) from e
            self._settle()

        logger.info(
            f"Credentials for {account_id}/{role_name} valid until "
            f"{credentials.expiration.isoformat()}"
        )
        return credentials
