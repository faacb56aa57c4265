"""
boto3 adapters for the AWS SSO OIDC (identity) and SSO portal (entitlement)
APIs. botocore errors are translated into the SsoError taxonomy here so the
rest of the package never sees ClientError.
"""

import logging
from typing import Dict, Any, Optional, Tuple

import boto3
from botocore import UNSIGNED
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from src.auth.device_code_flow import DeviceAuthorization
from src.auth.exceptions import (
    AuthenticationExpired,
    ConfigurationError,
    ProviderError,
    RateLimited,
)
from src.auth.token_cache import ClientRegistration


logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

PENDING_CODES = {
    "AuthorizationPendingException": "authorization_pending",
    "SlowDownException": "slow_down",
}
THROTTLE_CODES = {"TooManyRequestsException", "ThrottlingException"}
AUTH_EXPIRED_CODES = {"UnauthorizedException", "ExpiredTokenException"}


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


def _error_message(exc: ClientError) -> str:
    error = exc.response.get("Error", {})
    return error.get("Message") or str(exc)


def translate_client_error(exc: Exception, operation: str, portal: bool = False) -> Exception:
    """
    Map a botocore exception to the SsoError taxonomy.

    Args:
        exc: ClientError or BotoCoreError
        operation: Operation name for the message
        portal: True for portal API calls, where expired/unauthorized
            means the bearer token is no longer valid

    Returns:
        Exception to raise (caller chains it with `from exc`)
    """
    if isinstance(exc, BotoCoreError):
        return ProviderError(f"{operation} failed: {exc}", code="BotoCoreError")

    code = _error_code(exc)
    message = _error_message(exc)

    if code in THROTTLE_CODES:
        return RateLimited(f"{operation} throttled: {message}", code=code)
    if portal and code in AUTH_EXPIRED_CODES:
        return AuthenticationExpired(detail=f"{operation}: {code}: {message}")
    return ProviderError(f"{operation} failed: {code}: {message}", code=code)


class SsoOidcProvider:
    """Identity provider client (OAuth client registration and device grant)."""

    def __init__(self, region: str, client: Optional[Any] = None):
        if not region:
            raise ConfigurationError("SSO region not configured")
        self.region = region
        self.client = client or boto3.client(
            "sso-oidc",
            region_name=region,
            config=Config(signature_version=UNSIGNED)
        )

    def register_client(self, name: str, client_type: str = "public") -> ClientRegistration:
        """Register a new public OAuth client."""
        try:
            response = self.client.register_client(
                clientName=name,
                clientType=client_type
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "RegisterClient") from e

        expires_at = response.get("clientSecretExpiresAt")
        logger.info(f"Registered OAuth client {response['clientId']}")
        return ClientRegistration(
            client_id=response["clientId"],
            client_secret=response["clientSecret"],
            expires_at=float(expires_at) if expires_at else None,
        )

    def start_device_authorization(
        self,
        registration: ClientRegistration,
        start_url: str
    ) -> DeviceAuthorization:
        """Start a device authorization for the given start URL."""
        try:
            response = self.client.start_device_authorization(
                clientId=registration.client_id,
                clientSecret=registration.client_secret,
                startUrl=start_url
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "StartDeviceAuthorization") from e

        return DeviceAuthorization(
            device_code=response["deviceCode"],
            user_code=response["userCode"],
            verification_uri=response.get("verificationUri", ""),
            verification_uri_complete=response.get("verificationUriComplete", ""),
            expires_in=int(response.get("expiresIn", 600)),
            interval=int(response.get("interval", 1)),
        )

    def create_token(
        self,
        registration: ClientRegistration,
        device_code: str,
        grant_type: str = DEVICE_CODE_GRANT
    ) -> Dict[str, Any]:
        """
        Exchange the device code for a token.

        Returns:
            {"access_token", "expires_in", "token_type"} on success, or
            {"error": "authorization_pending" | "slow_down"} while waiting

        Raises:
            ProviderError: For any other error (expired code, denied, ...)
        """
        try:
            response = self.client.create_token(
                clientId=registration.client_id,
                clientSecret=registration.client_secret,
                grantType=grant_type,
                deviceCode=device_code
            )
        except ClientError as e:
            code = _error_code(e)
            if code in PENDING_CODES:
                return {"error": PENDING_CODES[code]}
            raise translate_client_error(e, "CreateToken") from e
        except BotoCoreError as e:
            raise translate_client_error(e, "CreateToken") from e

        return {
            "access_token": response["accessToken"],
            "expires_in": response.get("expiresIn", 0),
            "token_type": response.get("tokenType", "Bearer"),
        }


class SsoPortalProvider:
    """Entitlement and credential provider client (SSO portal API)."""

    def __init__(self, region: str, client: Optional[Any] = None):
        if not region:
            raise ConfigurationError("SSO region not configured")
        self.region = region
        self.client = client or boto3.client(
            "sso",
            region_name=region,
            config=Config(signature_version=UNSIGNED)
        )

    def list_accounts(
        self,
        access_token: str,
        page_token: Optional[str] = None,
        page_size: Optional[int] = None
    ) -> Dict[str, Any]:
        """One page of accounts: {"accounts": [...], "next_page_token": str|None}."""
        kwargs: Dict[str, Any] = {"accessToken": access_token}
        if page_token:
            kwargs["nextToken"] = page_token
        if page_size:
            kwargs["maxResults"] = page_size

        try:
            response = self.client.list_accounts(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "ListAccounts", portal=True) from e

        return {
            "accounts": response.get("accountList", []),
            "next_page_token": response.get("nextToken"),
        }

    def list_account_roles(
        self,
        access_token: str,
        account_id: str,
        page_token: Optional[str] = None,
        page_size: Optional[int] = None
    ) -> Dict[str, Any]:
        """One page of roles: {"roles": [...], "next_page_token": str|None}."""
        kwargs: Dict[str, Any] = {"accessToken": access_token, "accountId": account_id}
        if page_token:
            kwargs["nextToken"] = page_token
        if page_size:
            kwargs["maxResults"] = page_size

        try:
            response = self.client.list_account_roles(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "ListAccountRoles", portal=True) from e

        return {
            "roles": response.get("roleList", []),
            "next_page_token": response.get("nextToken"),
        }

    def get_role_credentials(
        self,
        access_token: str,
        account_id: str,
        role_name: str
    ) -> Optional[Dict[str, Any]]:
        """Raw roleCredentials payload, or None when the provider sent none."""
        try:
            response = self.client.get_role_credentials(
                accessToken=access_token,
                accountId=account_id,
                roleName=role_name
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "GetRoleCredentials", portal=True) from e

        return response.get("roleCredentials")


def build_providers(region: str) -> Tuple[SsoOidcProvider, SsoPortalProvider]:
    """Construct both provider clients for a region."""
    logger.info(f"Creating SSO clients for region {region}")
    return SsoOidcProvider(region), SsoPortalProvider(region)
