"""
OAuth2 device authorization grant against the SSO OIDC provider.
Registers a public client (once), starts a device authorization and polls
for a token with capped exponential backoff.
"""

import time
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from src.auth.exceptions import (
    ConfigurationError,
    LoginCancelled,
    PollingTimedOut,
    ProviderError,
    SsoError,
)
from src.auth.rate_limiter import ExponentialBackoff
from src.auth.token_cache import BearerToken, ClientRegistration, TokenCache, redact


logger = logging.getLogger(__name__)

CLIENT_NAME = "aws-sso-switcher"
CLIENT_TYPE = "public"


class FlowState(Enum):
    IDLE = "idle"
    REGISTERING = "registering"
    AWAITING_USER_AUTHORIZATION = "awaiting_user_authorization"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = {
    FlowState.SUCCEEDED,
    FlowState.FAILED,
    FlowState.TIMED_OUT,
    FlowState.CANCELLED,
}


@dataclass(frozen=True)
class DeviceAuthorization:
    """Device authorization returned by the identity provider."""
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int = 600
    interval: int = 1


@dataclass
class PollConfig:
    """Token polling configuration."""
    initial_interval: float = 2.0
    backoff_factor: float = 1.5
    max_interval: float = 10.0
    max_attempts: int = 30
    slow_down_increment: float = 5.0


class DeviceCodeFlow:
    """
    One device authorization attempt.

    State machine: IDLE -> REGISTERING -> AWAITING_USER_AUTHORIZATION ->
    POLLING -> SUCCEEDED | FAILED | TIMED_OUT | CANCELLED.
    """

    def __init__(
        self,
        provider,
        token_cache: TokenCache,
        client_name: str = CLIENT_NAME,
        poll_config: Optional[PollConfig] = None,
        commit: Optional[Callable[[BearerToken], None]] = None,
        store_registration: Optional[Callable[[ClientRegistration], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        reuse_registration: bool = True
    ):
        """
        Initialize device code flow.

        Args:
            provider: Identity provider client (register_client,
                start_device_authorization, create_token)
            token_cache: Cache holding the client registration and token
            client_name: OAuth client name used at registration
            poll_config: Polling intervals and limits
            commit: Stores the acquired token; defaults to token_cache.set.
                May raise LoginCancelled if the attempt was superseded.
            store_registration: Stores a newly registered client; defaults to
                token_cache.set_client_registration. May raise LoginCancelled.
            cancel_event: Set by the owner to stop polling
            reuse_registration: False to always register a new client
        """
        self.provider = provider
        self.token_cache = token_cache
        self.client_name = client_name
        self.poll_config = poll_config or PollConfig()
        self._commit = commit or token_cache.set
        self._store_registration = store_registration or token_cache.set_client_registration
        self._cancel_event = cancel_event
        self.reuse_registration = reuse_registration

        self.state = FlowState.IDLE
        self.attempts = 0
        self.intervals: List[float] = []
        self._registration: Optional[ClientRegistration] = None
        self._last_device_flow: Optional[DeviceAuthorization] = None

    @property
    def authorization(self) -> Optional[DeviceAuthorization]:
        return self._last_device_flow

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def cancel(self):
        """Stop polling at the next check."""
        if self._cancel_event is None:
            self._cancel_event = threading.Event()
        self._cancel_event.set()

    def _transition(self, state: FlowState):
        logger.debug(f"Device flow: {self.state.value} -> {state.value}")
        self.state = state

    def _check_cancelled(self):
        if self.cancelled:
            self._transition(FlowState.CANCELLED)
            raise LoginCancelled("Login attempt was cancelled")

    def _wait(self, delay: float):
        if self._cancel_event is not None:
            self._cancel_event.wait(delay)
        else:
            time.sleep(delay)

    def _mark_failed(self, error: SsoError):
        if self.state in TERMINAL_STATES:
            return
        if isinstance(error, LoginCancelled):
            self._transition(FlowState.CANCELLED)
        elif isinstance(error, PollingTimedOut):
            self._transition(FlowState.TIMED_OUT)
        else:
            self._transition(FlowState.FAILED)

    def register(self) -> ClientRegistration:
        """
        Reuse the cached client registration or register a new client.

        Returns:
            ClientRegistration stored in the token cache
        """
        self._transition(FlowState.REGISTERING)

        registration = None
        if self.reuse_registration:
            registration = self.token_cache.get_client_registration()
        if registration is not None and registration.expires_at and registration.expires_at <= time.time():
            logger.info(f"Client registration {registration.client_id} expired, re-registering")
            registration = None

        if registration is None:
            logger.info(f"Registering OAuth client '{self.client_name}'")
            registration = self.provider.register_client(self.client_name, CLIENT_TYPE)
            # A registration arriving after cancellation must not be stored
            self._check_cancelled()
            self._store_registration(registration)
        else:
            logger.debug(f"Reusing client registration {registration.client_id}")

        self._registration = registration
        return registration

    def initiate_flow(self, start_url: str) -> DeviceAuthorization:
        """
        Start the device authorization.

        Args:
            start_url: SSO portal start URL

        Returns:
            DeviceAuthorization with user_code and verification URIs
        """
        if not start_url:
            raise ConfigurationError("SSO start URL not configured")
        if self._registration is None:
            raise ConfigurationError("No client registration. Call register() first.")

        self._check_cancelled()
        logger.info(f"Initiating device authorization for {start_url}")

        authorization = self.provider.start_device_authorization(self._registration, start_url)
        self._last_device_flow = authorization
        self._transition(FlowState.AWAITING_USER_AUTHORIZATION)

        logger.info(f"Device authorization started. User code: {authorization.user_code}")
        return authorization

    def get_authorization_url(self) -> str:
        """Get the complete verification URI for user authorization."""
        if not self._last_device_flow:
            raise RuntimeError("No active device flow. Call initiate_flow() first.")
        return (
            self._last_device_flow.verification_uri_complete
            or self._last_device_flow.verification_uri
        )

    def get_user_code(self) -> str:
        """Get the user code for authorization."""
        if not self._last_device_flow:
            raise RuntimeError("No active device flow. Call initiate_flow() first.")
        return self._last_device_flow.user_code

    def poll_for_token(self, authorization: Optional[DeviceAuthorization] = None) -> BearerToken:
        """
        Poll until the user authorizes the device.

        Pending responses back off 2s, 3s, 4.5s, ... capped at max_interval.
        slow_down adds slow_down_increment to the next wait.

        Returns:
            BearerToken, already committed to the token cache

        Raises:
            PollingTimedOut: max_attempts pending responses or device code lifetime
            LoginCancelled: cancel() was called or the commit was rejected
            ProviderError: any other provider error
        """
        if authorization is None:
            authorization = self._last_device_flow
        if authorization is None:
            raise RuntimeError("No device flow provided or previously initiated.")
        if self._registration is None:
            raise ConfigurationError("No client registration. Call register() first.")

        config = self.poll_config
        backoff = ExponentialBackoff(
            base_delay=config.initial_interval,
            max_delay=config.max_interval,
            factor=config.backoff_factor
        )
        deadline = None
        if authorization.expires_in:
            deadline = time.monotonic() + authorization.expires_in

        self._transition(FlowState.POLLING)
        self.attempts = 0
        self.intervals = []
        logger.info("Starting token polling")

        try:
            return self._poll(authorization, backoff, deadline)
        except SsoError as e:
            self._mark_failed(e)
            raise

    def _poll(
        self,
        authorization: DeviceAuthorization,
        backoff: ExponentialBackoff,
        deadline: Optional[float]
    ) -> BearerToken:
        config = self.poll_config

        while self.attempts < config.max_attempts:
            self._check_cancelled()
            logger.debug(f"Polling attempt {self.attempts + 1}/{config.max_attempts}")

            result = self.provider.create_token(self._registration, authorization.device_code)

            # A token arriving after cancellation must not be stored
            self._check_cancelled()

            if "access_token" in result:
                token = BearerToken.from_response(result)
                self._commit(token)
                self._transition(FlowState.SUCCEEDED)
                logger.info(f"Token acquired successfully: {redact(token.access_token)}")
                return token

            error = result.get("error", "")
            if error == "slow_down":
                logger.debug("Server requested slow down")
                backoff.extend(config.slow_down_increment)
            elif error != "authorization_pending":
                raise ProviderError(f"Unexpected token response: {error or result}", code=error or None)

            self.attempts += 1
            if self.attempts >= config.max_attempts:
                break
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Device code expired while polling")
                break

            delay = backoff.get_delay()
            self.intervals.append(delay)
            logger.debug(f"Authorization pending, waiting {delay:.2f}s")
            self._wait(delay)

        self._transition(FlowState.TIMED_OUT)
        logger.warning(f"Device code flow timed out after {self.attempts} attempts")
        raise PollingTimedOut(
            f"Token polling timed out after {self.attempts} attempts"
        )

    def authenticate(
        self,
        start_url: str,
        prompt_callback: Optional[Callable[[str, str], None]] = None
    ) -> BearerToken:
        """
        Complete authentication flow.

        Args:
            start_url: SSO portal start URL
            prompt_callback: Callback to display user code and URI

        Returns:
            BearerToken committed to the token cache
        """
        try:
            self.register()
            authorization = self.initiate_flow(start_url)

            user_code = authorization.user_code
            auth_url = self.get_authorization_url()

            if prompt_callback:
                prompt_callback(user_code, auth_url)
            else:
                print(f"\nTo sign in, use a web browser to open the page {auth_url}")
                print(f"and confirm the code {user_code} to authenticate.\n")

            return self.poll_for_token(authorization)

        except SsoError as e:
            self._mark_failed(e)
            logger.error(f"Device code flow ended in {self.state.value}: {e}")
            raise
