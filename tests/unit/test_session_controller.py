"""
Unit tests for session controller module.
Tests the login/logout lifecycle against in-memory provider doubles.
"""

import threading
import unittest
from unittest.mock import patch, MagicMock
from keyring.errors import KeyringError
from src.auth.device_code_flow import DeviceAuthorization, PollConfig
from src.auth.exceptions import (
    AuthenticationExpired,
    ConfigurationError,
    LoginCancelled,
    ProviderError,
)
from src.auth.session_controller import SessionController, SessionEvent
from src.auth.session_store import KeychainSessionStore, MemorySessionStore, SessionRecord
from src.auth.session_timer import SESSION_DURATION
from src.auth.settings import SsoSettings
from src.auth.token_cache import BearerToken, ClientRegistration
from src.credentials.broker import BrokerConfig


REGION = "us-east-1"
START_URL = "https://example.awsapps.com/start"
PENDING = {"error": "authorization_pending"}


def token_response(value: str) -> dict:
    return {"access_token": value, "expires_in": 28800, "token_type": "Bearer"}


def device_authorization(device_code: str = "dc-1") -> DeviceAuthorization:
    return DeviceAuthorization(
        device_code=device_code,
        user_code="ABCD-EFGH",
        verification_uri="https://device.sso.us-east-1.amazonaws.com/",
        verification_uri_complete="https://device.sso.us-east-1.amazonaws.com/?user_code=ABCD-EFGH",
    )


class FakeClock:

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSessionController(unittest.TestCase):
    """Test SessionController lifecycle."""

    def setUp(self):
        """Set up test fixtures."""
        self.clock = FakeClock()
        self.store = MemorySessionStore()

        self.oidc = MagicMock()
        self.oidc.register_client.return_value = ClientRegistration(
            client_id="cid", client_secret="csecret"
        )
        self.oidc.start_device_authorization.return_value = device_authorization()
        self.portal = MagicMock()
        self.factory = MagicMock(return_value=(self.oidc, self.portal))

        self.hook = MagicMock()
        self.events = []

        self.controller = SessionController(
            settings=SsoSettings(region=REGION, start_url=START_URL),
            store=self.store,
            provider_factory=self.factory,
            poll_config=PollConfig(initial_interval=0.01, max_interval=0.02, max_attempts=5),
            broker_config=BrokerConfig(
                accounts_interval_ms=0,
                roles_interval_ms=0,
                credentials_interval_ms=0,
                settle_delay=0,
                throttle_delay=0,
            ),
            logout_hooks=[self.hook],
            prompt_callback=MagicMock(),
            clock=self.clock,
        )
        self.controller.add_listener(self.events.append)

    def tearDown(self):
        self.controller.shutdown()

    def login(self, value: str = "tok-1"):
        self.oidc.create_token.side_effect = [PENDING, token_response(value)]
        return self.controller.login(REGION, START_URL)

    def test_login_success(self):
        token = self.login()

        self.assertEqual(token.access_token, "tok-1")
        self.assertTrue(self.controller.is_authenticated())
        self.assertEqual(self.controller.access_token(), "tok-1")
        self.assertEqual(self.controller.timer.remaining(), SESSION_DURATION)
        self.assertEqual(self.events, [SessionEvent.AUTHENTICATED])
        self.factory.assert_called_once_with(REGION)

    def test_login_persists_session(self):
        self.login()

        record = self.store.load()
        self.assertEqual(record.bearer_token.access_token, "tok-1")
        self.assertEqual(record.session_started_at, self.clock.now)
        self.assertEqual(record.region, REGION)
        self.assertEqual(record.start_url, START_URL)
        self.assertEqual(record.client_registration.client_id, "cid")

    def test_login_uses_settings_defaults(self):
        self.oidc.create_token.side_effect = [token_response("tok-1")]

        self.controller.login()

        self.oidc.start_device_authorization.assert_called_once()
        self.assertEqual(self.oidc.start_device_authorization.call_args[0][1], START_URL)

    def test_login_requires_configuration(self):
        controller = SessionController(store=MemorySessionStore(), provider_factory=self.factory)

        with self.assertRaises(ConfigurationError):
            controller.login()
        self.factory.assert_not_called()

    def test_failed_login_keeps_previous_session(self):
        self.login("tok-1")
        self.oidc.create_token.side_effect = ProviderError("denied", code="AccessDeniedException")

        with self.assertRaises(ProviderError):
            self.controller.login(REGION, START_URL)

        self.assertTrue(self.controller.is_authenticated())
        self.assertEqual(self.controller.access_token(), "tok-1")

    def test_save_failure_does_not_fail_login(self):
        self.store.save = MagicMock(return_value=False)

        self.login()

        self.assertTrue(self.controller.is_authenticated())

    def test_logout_is_idempotent(self):
        self.login()

        self.controller.logout()
        self.controller.logout()

        self.assertFalse(self.controller.is_authenticated())
        self.assertIsNone(self.store.load())
        self.assertIsNone(self.controller.token_cache.get_client_registration())
        self.hook.assert_called_once_with()
        self.assertEqual(self.events, [SessionEvent.AUTHENTICATED, SessionEvent.LOGGED_OUT])

    def test_logout_without_session(self):
        self.controller.logout()

        self.hook.assert_not_called()
        self.assertEqual(self.events, [])

    def test_logout_hook_failure_does_not_block_logout(self):
        self.hook.side_effect = RuntimeError("boom")
        self.login()

        self.controller.logout()

        self.assertFalse(self.controller.is_authenticated())
        self.assertEqual(self.events[-1], SessionEvent.LOGGED_OUT)

    def test_logout_during_polling_drops_late_token(self):
        """Test a token arriving after logout is never stored."""
        polling = threading.Event()
        release = threading.Event()

        def create_token(registration, device_code):
            polling.set()
            release.wait(2.0)
            return token_response("tok-late")

        self.oidc.create_token.side_effect = create_token

        future = self.controller.start_login(REGION, START_URL)
        self.assertTrue(polling.wait(2.0))
        self.controller.logout()
        release.set()

        with self.assertRaises(LoginCancelled):
            future.result(timeout=2.0)
        self.assertFalse(self.controller.is_authenticated())
        self.assertIsNone(self.controller.token_cache.get())
        self.assertIsNone(self.store.load())
        self.assertNotIn(SessionEvent.AUTHENTICATED, self.events)

    def test_newer_login_supersedes_pending_one(self):
        polling = threading.Event()
        release = threading.Event()
        self.oidc.start_device_authorization.side_effect = [
            device_authorization("dc-1"), device_authorization("dc-2")
        ]

        def create_token(registration, device_code):
            if device_code == "dc-1":
                polling.set()
                release.wait(2.0)
                return token_response("tok-old")
            return token_response("tok-new")

        self.oidc.create_token.side_effect = create_token

        first = self.controller.start_login(REGION, START_URL)
        self.assertTrue(polling.wait(2.0))
        self.controller.login(REGION, START_URL)
        release.set()

        with self.assertRaises(LoginCancelled):
            first.result(timeout=2.0)
        self.assertEqual(self.controller.access_token(), "tok-new")
        self.assertEqual(self.store.load().bearer_token.access_token, "tok-new")

    def test_session_window_expiry(self):
        self.login()
        self.clock.now += SESSION_DURATION + 1

        self.assertFalse(self.controller.is_authenticated())
        with self.assertRaises(AuthenticationExpired):
            self.controller.access_token()
        self.assertEqual(self.events[-1], SessionEvent.EXPIRED)
        self.assertIsNone(self.store.load())
        self.hook.assert_called_once_with()

    def test_status(self):
        self.login()
        self.clock.now += SESSION_DURATION - 10 * 60

        status = self.controller.status()

        self.assertTrue(status["authenticated"])
        self.assertEqual(status["region"], REGION)
        self.assertEqual(status["time_left"], "00:10:00")
        self.assertEqual(status["status"], "warning")

    def test_restore_live_session(self):
        started_at = self.clock.now - 3600
        self.store.save(SessionRecord(
            bearer_token=BearerToken(access_token="tok-saved", expires_at=started_at + 28800, issued_at=started_at),
            session_started_at=started_at,
            region=REGION,
            start_url=START_URL,
            client_registration=ClientRegistration(client_id="cid", client_secret="csecret"),
        ))

        self.assertTrue(self.controller.restore())

        self.assertTrue(self.controller.is_authenticated())
        self.assertEqual(self.controller.access_token(), "tok-saved")
        self.assertEqual(self.controller.timer.remaining(), SESSION_DURATION - 3600)
        self.assertEqual(self.controller.token_cache.get_client_registration().client_id, "cid")
        self.assertEqual(self.events, [SessionEvent.AUTHENTICATED])
        self.factory.assert_called_once_with(REGION)

    def test_restore_expired_session(self):
        started_at = self.clock.now - SESSION_DURATION - 60
        self.store.save(SessionRecord(
            bearer_token=BearerToken(access_token="tok-old", expires_at=started_at + 28800, issued_at=started_at),
            session_started_at=started_at,
            region=REGION,
            start_url=START_URL,
        ))

        self.assertFalse(self.controller.restore())

        self.assertFalse(self.controller.is_authenticated())
        self.assertIsNone(self.store.load())

    def test_restore_nothing_saved(self):
        self.assertFalse(self.controller.restore())

    def test_renew_reuses_login_parameters(self):
        self.login("tok-1")
        self.oidc.create_token.side_effect = [token_response("tok-2")]

        self.controller.renew()

        self.assertEqual(self.controller.access_token(), "tok-2")
        self.assertEqual(self.oidc.register_client.call_count, 1)

    def test_list_accounts(self):
        self.login()
        self.portal.list_accounts.return_value = {
            "accounts": [{"accountId": "111"}], "next_page_token": None
        }

        accounts = self.controller.list_accounts()

        self.assertEqual([a.account_id for a in accounts], ["111"])
        self.assertEqual(self.portal.list_accounts.call_args[0][0], "tok-1")

    def test_rejected_token_forces_logout(self):
        self.login()
        self.portal.list_account_roles.side_effect = AuthenticationExpired(
            detail="ListAccountRoles: UnauthorizedException"
        )

        with self.assertRaises(AuthenticationExpired):
            self.controller.list_roles("111")

        self.assertFalse(self.controller.is_authenticated())
        self.assertEqual(self.events[-1], SessionEvent.EXPIRED)
        self.assertIsNone(self.store.load())

    def test_get_credentials(self):
        self.login()
        self.portal.get_role_credentials.return_value = {
            "accessKeyId": "AKIA",
            "secretAccessKey": "secret",
            "sessionToken": "session",
            "expiration": 1700003600000,
        }

        credentials = self.controller.get_credentials("111", "Admin")

        self.assertEqual(credentials.access_key_id, "AKIA")
        self.portal.get_role_credentials.assert_called_once_with("tok-1", "111", "Admin")

    def test_portal_call_without_session(self):
        with self.assertRaises(AuthenticationExpired):
            self.controller.list_accounts()
        self.portal.list_accounts.assert_not_called()

    def test_listener_failure_is_contained(self):
        self.controller.add_listener(MagicMock(side_effect=RuntimeError("boom")))

        self.login()

        self.assertTrue(self.controller.is_authenticated())
        self.assertEqual(self.events, [SessionEvent.AUTHENTICATED])

    def test_remove_listener(self):
        self.controller.remove_listener(self.events.append)

        self.login()

        self.assertEqual(self.events, [])

    def test_monitor_expires_session(self):
        self.login()
        expired = threading.Event()
        ticks = []
        self.controller.add_listener(
            lambda event: expired.set() if event == SessionEvent.EXPIRED else None
        )

        self.controller.start_monitor(ticks.append, interval=0.01)
        self.clock.now += SESSION_DURATION + 1

        self.assertTrue(expired.wait(2.0))
        self.controller.stop_monitor()
        self.assertFalse(self.controller.is_authenticated())
        self.assertIn(0.0, ticks)

    def test_registration_after_logout_is_discarded(self):
        """Test a client registered after logout never reaches the cache."""
        def register_then_logout(name, client_type):
            self.controller.logout()
            return ClientRegistration(client_id="cid-late", client_secret="s")

        self.oidc.register_client.side_effect = register_then_logout

        with self.assertRaises(LoginCancelled):
            self.controller.login(REGION, START_URL)

        self.assertIsNone(self.controller.token_cache.get_client_registration())
        self.assertFalse(self.controller.is_authenticated())
        self.oidc.start_device_authorization.assert_not_called()

    def test_logout_between_commit_and_notify(self):
        """Test a logout racing the end of login is not followed by AUTHENTICATED."""
        commit_token = self.controller._commit_token

        def commit_then_logout(*args):
            commit_token(*args)
            self.controller.logout()

        self.controller._commit_token = commit_then_logout

        with self.assertRaises(LoginCancelled):
            self.login()

        self.assertFalse(self.controller.is_authenticated())
        self.assertEqual(self.events, [SessionEvent.LOGGED_OUT])


class TestSessionControllerRegions(unittest.TestCase):
    """Test logins across regions keep the live session's clients."""

    def setUp(self):
        self.clock = FakeClock()
        self.clients = {}
        for region in (REGION, "eu-west-1"):
            oidc = MagicMock()
            oidc.register_client.return_value = ClientRegistration(
                client_id=f"cid-{region}", client_secret="csecret"
            )
            oidc.start_device_authorization.return_value = device_authorization()
            self.clients[region] = (oidc, MagicMock())

        self.controller = SessionController(
            settings=SsoSettings(region=REGION, start_url=START_URL),
            store=MemorySessionStore(),
            provider_factory=lambda region: self.clients[region],
            poll_config=PollConfig(initial_interval=0.01, max_interval=0.02, max_attempts=5),
            broker_config=BrokerConfig(settle_delay=0, throttle_delay=0),
            prompt_callback=MagicMock(),
            clock=self.clock,
        )
        self.clients[REGION][0].create_token.side_effect = [token_response("tok-us")]
        self.controller.login(REGION, START_URL)

    def tearDown(self):
        self.controller.shutdown()

    def test_failed_login_in_other_region_keeps_session_clients(self):
        eu_oidc, eu_portal = self.clients["eu-west-1"]
        eu_oidc.create_token.side_effect = ProviderError("denied", code="AccessDeniedException")

        with self.assertRaises(ProviderError):
            self.controller.login("eu-west-1", "https://other.awsapps.com/start")

        self.assertTrue(self.controller.is_authenticated())
        self.assertEqual(self.controller.access_token(), "tok-us")
        self.assertEqual(self.controller.region, REGION)
        self.assertEqual(self.controller.start_url, START_URL)
        self.assertIs(self.controller.broker.provider, self.clients[REGION][1])
        self.assertEqual(
            self.controller.token_cache.get_client_registration().client_id, f"cid-{REGION}"
        )
        self.assertEqual(self.controller.status()["region"], REGION)

    def test_login_in_other_region_switches_clients(self):
        eu_oidc, eu_portal = self.clients["eu-west-1"]
        eu_oidc.create_token.side_effect = [token_response("tok-eu")]

        self.controller.login("eu-west-1", "https://other.awsapps.com/start")

        self.assertEqual(self.controller.access_token(), "tok-eu")
        self.assertEqual(self.controller.region, "eu-west-1")
        self.assertIs(self.controller.broker.provider, eu_portal)
        self.assertEqual(
            self.controller.token_cache.get_client_registration().client_id, "cid-eu-west-1"
        )
        eu_oidc.register_client.assert_called_once()


class TestSessionControllerKeyringFailure(unittest.TestCase):
    """Test the lifecycle survives an unavailable keyring."""

    def setUp(self):
        patcher = patch.multiple(
            'src.auth.session_store.keyring',
            set_password=MagicMock(side_effect=KeyringError("no backend")),
            get_password=MagicMock(side_effect=KeyringError("no backend")),
            delete_password=MagicMock(side_effect=KeyringError("no backend")),
        )
        patcher.start()
        self.addCleanup(patcher.stop)

        oidc = MagicMock()
        oidc.register_client.return_value = ClientRegistration(client_id="cid", client_secret="s")
        oidc.start_device_authorization.return_value = device_authorization()
        oidc.create_token.side_effect = [token_response("tok-1")]

        self.hook = MagicMock()
        self.events = []
        self.controller = SessionController(
            settings=SsoSettings(region=REGION, start_url=START_URL),
            store=KeychainSessionStore(app_name="test-app"),
            provider_factory=MagicMock(return_value=(oidc, MagicMock())),
            poll_config=PollConfig(initial_interval=0.01, max_interval=0.02, max_attempts=5),
            logout_hooks=[self.hook],
            prompt_callback=MagicMock(),
        )
        self.controller.add_listener(self.events.append)
        self.addCleanup(self.controller.shutdown)

    def test_logout_twice(self):
        self.controller.logout()
        self.controller.login()

        self.controller.logout()
        self.controller.logout()

        self.assertFalse(self.controller.is_authenticated())
        self.hook.assert_called_once_with()
        self.assertEqual(self.events, [SessionEvent.AUTHENTICATED, SessionEvent.LOGGED_OUT])

    def test_restore_without_keyring(self):
        self.assertFalse(self.controller.restore())


if __name__ == '__main__':
    unittest.main()
