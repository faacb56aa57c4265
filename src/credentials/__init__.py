# __init__.py for credentials module
from .broker import CredentialBroker, BrokerConfig, Account, Role, RoleCredentials
from .profile import DefaultProfile, get_default_profile, set_default_profile

__all__ = [
    'CredentialBroker',
    'BrokerConfig',
    'Account',
    'Role',
    'RoleCredentials',
    'DefaultProfile',
    'get_default_profile',
    'set_default_profile'
]
