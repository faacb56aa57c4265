# __init__.py for auth module
from .exceptions import (
    SsoError,
    ConfigurationError,
    ProviderError,
    RateLimited,
    AuthenticationExpired,
    PollingTimedOut,
    LoginCancelled
)
from .rate_limiter import RateLimiter, ExponentialBackoff
from .token_cache import TokenCache, BearerToken, ClientRegistration
from .session_timer import SessionTimer, SessionStatus, SESSION_DURATION
from .device_code_flow import DeviceCodeFlow, DeviceAuthorization, FlowState, PollConfig
from .settings import SsoSettings

__all__ = [
    'SsoError',
    'ConfigurationError',
    'ProviderError',
    'RateLimited',
    'AuthenticationExpired',
    'PollingTimedOut',
    'LoginCancelled',
    'RateLimiter',
    'ExponentialBackoff',
    'TokenCache',
    'BearerToken',
    'ClientRegistration',
    'SessionTimer',
    'SessionStatus',
    'SESSION_DURATION',
    'DeviceCodeFlow',
    'DeviceAuthorization',
    'FlowState',
    'PollConfig',
    'SsoSettings'
]
