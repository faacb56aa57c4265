"""
Session controller for the SSO login lifecycle.
Owns login/logout, session persistence and restore, and the authority for
"is there a current session". All token and timer mutations go through here.
"""

import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from src.auth.device_code_flow import DeviceCodeFlow, PollConfig
from src.auth.exceptions import AuthenticationExpired, ConfigurationError, LoginCancelled
from src.auth.providers import build_providers
from src.auth.session_store import KeychainSessionStore, SessionRecord
from src.auth.session_timer import SessionTimer, format_time_left
from src.auth.settings import SsoSettings
from src.auth.token_cache import BearerToken, ClientRegistration, TokenCache, redact
from src.credentials.broker import (
    Account,
    BrokerConfig,
    CredentialBroker,
    Role,
    RoleCredentials,
)


logger = logging.getLogger(__name__)


class SessionEvent(Enum):
    AUTHENTICATED = "authenticated"
    LOGGED_OUT = "logged_out"
    EXPIRED = "expired"


class SessionController:
    """
    Single owner of the SSO session for this process.

    Login attempts are tagged with a generation number; a token from a
    superseded attempt (newer login, or logout) is never committed.
    """

    def __init__(
        self,
        settings: Optional[SsoSettings] = None,
        store=None,
        provider_factory: Callable = build_providers,
        poll_config: Optional[PollConfig] = None,
        broker_config: Optional[BrokerConfig] = None,
        logout_hooks: Optional[List[Callable[[], None]]] = None,
        prompt_callback: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize session controller.

        Args:
            settings: Default login parameters
            store: Durable session store (load/save/clear); defaults to
                the keyring-backed store
            provider_factory: region -> (oidc_provider, portal_provider)
            poll_config: Device token polling configuration
            broker_config: Credential broker configuration
            logout_hooks: Called on logout to clear external login artifacts
            prompt_callback: Receives (user_code, verification_uri_complete)
            clock: Wall-clock source
        """
        self.settings = settings or SsoSettings()
        self.store = store if store is not None else KeychainSessionStore(self.settings.app_name)
        self.provider_factory = provider_factory
        self.poll_config = poll_config or PollConfig()
        self.broker_config = broker_config or BrokerConfig()
        self.logout_hooks = list(logout_hooks or [])
        self.prompt_callback = prompt_callback
        self._clock = clock

        self.token_cache = TokenCache()
        self.timer = SessionTimer(duration=self.settings.session_duration, clock=clock)

        self._lock = threading.RLock()
        self._generation = 0
        self._active_cancel: Optional[threading.Event] = None
        self._listeners: List[Callable[[SessionEvent], None]] = []
        self._executor: Optional[ThreadPoolExecutor] = None

        self._region: Optional[str] = None
        self._start_url: Optional[str] = None
        self._oidc = None
        self._portal = None
        self._broker: Optional[CredentialBroker] = None

    @property
    def region(self) -> Optional[str]:
        return self._region

    @property
    def start_url(self) -> Optional[str]:
        return self._start_url

    @property
    def broker(self) -> Optional[CredentialBroker]:
        return self._broker

    # Listeners

    def add_listener(self, listener: Callable[[SessionEvent], None]):
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[SessionEvent], None]):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, event: SessionEvent):
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Session listener failed on {event.value}")

    # Clients

    def _clients_for(self, region: str):
        """Provider clients and broker for region, reusing the installed ones."""
        with self._lock:
            if self._oidc is not None and self._region == region:
                return self._oidc, self._portal, self._broker
        oidc, portal = self.provider_factory(region)
        return oidc, portal, CredentialBroker(portal, self.broker_config)

    def _install_clients(self, region: str, oidc, portal, broker: CredentialBroker):
        with self._lock:
            if self._oidc is oidc and self._region == region:
                return
            self._oidc, self._portal, self._broker = oidc, portal, broker
            self._region = region
        logger.info(f"SSO clients switched to region {region}")

    # Login

    def login(
        self,
        region: Optional[str] = None,
        start_url: Optional[str] = None,
        prompt_callback: Optional[Callable[[str, str], None]] = None
    ) -> BearerToken:
        """
        Run the device authorization flow and start a new session.

        On failure the previous session (if any) is left untouched: the
        region, start URL and clients of the new attempt are only installed
        when its token is committed.

        Raises:
            ConfigurationError: Region or start URL missing or invalid
            PollingTimedOut: User did not authorize in time
            LoginCancelled: Superseded by a newer login or a logout
            ProviderError: Identity provider error
        """
        params = SsoSettings(
            region=region or self.settings.region,
            start_url=start_url or self.settings.start_url,
            client_name=self.settings.client_name,
            app_name=self.settings.app_name,
            session_duration=self.settings.session_duration,
        )
        params.require()

        with self._lock:
            self._generation += 1
            generation = self._generation
            if self._active_cancel is not None:
                logger.info("Superseding in-flight login attempt")
                self._active_cancel.set()
            cancel_event = threading.Event()
            self._active_cancel = cancel_event
            same_region = self._region in (None, params.region)

        clients = self._clients_for(params.region)
        logger.info(f"Starting login #{generation} for {params.start_url} in {params.region}")

        # Registration for another region is held back until the token commits
        deferred: Dict[str, ClientRegistration] = {}

        def store_registration(registration: ClientRegistration):
            if not self._commit_registration(generation, cancel_event, registration, params.region):
                deferred["registration"] = registration

        def commit(token: BearerToken):
            self._commit_token(
                generation, cancel_event, token, params, clients, deferred.get("registration")
            )

        flow = DeviceCodeFlow(
            clients[0],
            self.token_cache,
            client_name=params.client_name,
            poll_config=self.poll_config,
            commit=commit,
            store_registration=store_registration,
            cancel_event=cancel_event,
            reuse_registration=same_region
        )

        try:
            token = flow.authenticate(params.start_url, prompt_callback or self.prompt_callback)
        finally:
            with self._lock:
                if self._active_cancel is cancel_event:
                    self._active_cancel = None

        with self._lock:
            current = generation == self._generation
        if not current:
            logger.info(f"Login #{generation} was superseded after completing")
            raise LoginCancelled("Login attempt was superseded")

        logger.info(f"Login #{generation} completed")
        self._notify(SessionEvent.AUTHENTICATED)
        return token

    def _is_stale(self, generation: int, cancel_event: threading.Event) -> bool:
        return generation != self._generation or cancel_event.is_set()

    def _commit_registration(
        self,
        generation: int,
        cancel_event: threading.Event,
        registration: ClientRegistration,
        region: str
    ) -> bool:
        """
        Store a new client registration, unless the attempt is stale.

        Returns:
            False if a live session in another region keeps its registration
            until this attempt commits
        """
        with self._lock:
            if self._is_stale(generation, cancel_event):
                logger.info(f"Discarding client registration from superseded login #{generation}")
                raise LoginCancelled("Login attempt was superseded")
            if self._region not in (None, region) and self.token_cache.get() is not None:
                return False
            self.token_cache.set_client_registration(registration)
            return True

    def _commit_token(
        self,
        generation: int,
        cancel_event: threading.Event,
        token: BearerToken,
        params: SsoSettings,
        clients: tuple,
        registration: Optional[ClientRegistration] = None
    ):
        """Store the token and start the session, unless the attempt is stale."""
        with self._lock:
            if self._is_stale(generation, cancel_event):
                logger.info(f"Discarding token from superseded login #{generation}")
                raise LoginCancelled("Login attempt was superseded")

            self._install_clients(params.region, *clients)
            self._start_url = params.start_url
            if registration is not None:
                self.token_cache.set_client_registration(registration)

            started_at = self._clock()
            record = SessionRecord(
                bearer_token=token,
                session_started_at=started_at,
                session_duration_limit=params.session_duration,
                region=params.region,
                start_url=params.start_url,
                client_registration=self.token_cache.get_client_registration(),
            )
            if not self.store.save(record):
                logger.warning("Session could not be persisted; it will not survive a restart")

            self.token_cache.set(token)
            self.timer.start(started_at)

    def start_login(
        self,
        region: Optional[str] = None,
        start_url: Optional[str] = None,
        prompt_callback: Optional[Callable[[str, str], None]] = None
    ) -> Future:
        """Run login() on a worker thread and return its Future."""
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="sso-login")
            executor = self._executor
        return executor.submit(self.login, region, start_url, prompt_callback)

    def renew(self, prompt_callback: Optional[Callable[[str, str], None]] = None) -> BearerToken:
        """Log in again with the last used region and start URL."""
        region = self._region or self.settings.region
        start_url = self._start_url or self.settings.start_url
        if not region or not start_url:
            raise ConfigurationError("No previous login parameters to renew with")
        return self.login(region, start_url, prompt_callback)

    # Logout / expiry

    def logout(self):
        """
        End the session. Idempotent: logging out twice is a no-op.

        Cancels any in-flight login so a late token is never stored.
        """
        self._end_session(SessionEvent.LOGGED_OUT)

    def _end_session(self, event: SessionEvent, expected_token: Optional[str] = None) -> bool:
        with self._lock:
            current = self.token_cache.get()
            if expected_token is not None and (
                current is None or current.access_token != expected_token
            ):
                # Error came from a token that has since been replaced
                return False

            self._generation += 1
            if self._active_cancel is not None:
                self._active_cancel.set()
                self._active_cancel = None

            was_active = current is not None or self.timer.is_running
            self.token_cache.clear(include_registration=True)
            self.timer.stop()
            self.store.clear()

        if not was_active:
            logger.debug("Logout requested with no active session")
            return False

        for hook in self.logout_hooks:
            try:
                hook()
            except Exception:
                logger.exception("Logout hook failed")

        if event == SessionEvent.EXPIRED:
            logger.warning("Session expired, logged out")
        else:
            logger.info("Logged out")
        self._notify(event)
        return True

    def _expire(self, expected_token: Optional[str] = None) -> bool:
        return self._end_session(SessionEvent.EXPIRED, expected_token)

    # State

    def is_authenticated(self) -> bool:
        """True iff a token is cached and the session window is open."""
        token = self.token_cache.get()
        if token is None:
            return False
        if self.timer.remaining() > 0:
            return True

        self._expire(token.access_token)
        return False

    def access_token(self) -> str:
        """
        Current bearer token, checked against the session window.

        Raises:
            AuthenticationExpired: No session or session expired
        """
        token = self.token_cache.get()
        if token is None:
            raise AuthenticationExpired(detail="No active session")
        if self.timer.remaining() <= 0:
            self._expire(token.access_token)
            raise AuthenticationExpired(detail="Session window elapsed")
        return token.access_token

    def status(self) -> Dict[str, Any]:
        """Snapshot of the session for display."""
        authenticated = self.is_authenticated()
        remaining = self.timer.remaining() if authenticated else 0.0
        return {
            "authenticated": authenticated,
            "region": self._region,
            "start_url": self._start_url,
            "remaining_seconds": max(remaining, 0.0),
            "time_left": format_time_left(remaining),
            "status": self.timer.status().value,
        }

    # Restore

    def restore(self) -> bool:
        """
        Reload a persisted session without a new device authorization.

        Returns:
            True if a live session was restored
        """
        record = self.store.load()
        if record is None:
            logger.info("No saved session to restore")
            return False

        if record.is_expired(self._clock()):
            logger.info("Saved session has expired, discarding")
            self.store.clear()
            return False

        with self._lock:
            if record.region:
                self._install_clients(record.region, *self._clients_for(record.region))
            self._start_url = record.start_url
            if record.client_registration is not None:
                self.token_cache.set_client_registration(record.client_registration)
            self.token_cache.set(record.bearer_token)
            self.timer.start(record.session_started_at)

        logger.info(
            f"Restored session {redact(record.bearer_token.access_token)}, "
            f"{format_time_left(self.timer.remaining())} remaining"
        )
        self._notify(SessionEvent.AUTHENTICATED)
        return True

    # Ticker

    def start_monitor(
        self,
        callback: Optional[Callable[[float], None]] = None,
        interval: float = 1.0
    ):
        """Tick every interval seconds; an expiry seen on a tick ends the session."""
        def on_tick(remaining: float):
            token = self.token_cache.get()
            if token is not None and remaining <= 0:
                self._expire(token.access_token)
            if callback:
                callback(max(remaining, 0.0))

        self.timer.start_ticker(on_tick, interval)

    def stop_monitor(self):
        self.timer.stop_ticker()

    def shutdown(self):
        """Stop the ticker and cancel any in-flight login."""
        self.stop_monitor()
        with self._lock:
            if self._active_cancel is not None:
                self._active_cancel.set()
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=False)

    # Guarded portal calls

    def _guarded(self, operation: Callable):
        access_token = self.access_token()
        broker = self._broker
        if broker is None:
            raise ConfigurationError("SSO clients not initialized; log in first")

        try:
            return operation(broker, access_token)
        except AuthenticationExpired as e:
            logger.warning(f"Token rejected by provider: {e.detail}")
            self._expire(access_token)
            raise

    def list_accounts(self) -> List[Account]:
        return self._guarded(lambda broker, token: broker.list_accounts(token))

    def list_roles(self, account_id: str) -> List[Role]:
        return self._guarded(lambda broker, token: broker.list_roles(token, account_id))

    def get_credentials(self, account_id: str, role_name: str) -> RoleCredentials:
        return self._guarded(
            lambda broker, token: broker.get_credentials(token, account_id, role_name)
        )
