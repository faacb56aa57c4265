#!/usr/bin/env python3
"""
Interactive AWS SSO login script.
Guides user through the device authorization flow, lists the accounts
and roles the session can reach, and prints role credentials as
environment exports.
"""

import sys
import os
import argparse
import logging
import webbrowser
from typing import Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from src.auth.exceptions import SsoError, AuthenticationExpired
from src.auth.session_controller import SessionController
from src.auth.settings import SsoSettings
from src.credentials.profile import get_default_profile, set_default_profile


# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def show_prompt(user_code: str, verification_uri: str):
    """Print the user code and open the verification page."""
    print(f"\n{'='*60}")
    print(" AUTHENTICATION REQUIRED")
    print("="*60)
    print(f"\n1. Open this URL in your browser:")
    print(f"   {verification_uri}")
    print(f"\n2. Confirm this code:")
    print(f"   {user_code}")
    print("="*60)
    print("\n⏳ Waiting for authorization... (check your browser)\n")

    try:
        webbrowser.open(verification_uri)
    except webbrowser.Error as e:
        logger.debug(f"Could not open browser: {e}")


def sso_login(
    settings: SsoSettings,
    account_id: Optional[str] = None,
    role_name: Optional[str] = None,
    make_default: bool = False
) -> bool:
    """
    Log in (or restore a saved session) and show entitlements.

    Args:
        settings: Region, start URL and client name
        account_id: Account to fetch credentials for
        role_name: Role to fetch credentials for
        make_default: Write the account and role to ~/.aws/config

    Returns:
        True if successful
    """
    print("\n" + "="*60)
    print(" AWS SSO Switcher - Login")
    print("="*60 + "\n")

    controller = SessionController(settings=settings, prompt_callback=show_prompt)

    try:
        if controller.restore():
            print("✅ Restored saved session")
        else:
            print("🔐 Starting device authorization...")
            controller.login()
            print("\n✅ Authentication successful!")

        status = controller.status()
        print(f"   Session time left: {status['time_left']}")

        if not account_id and not role_name:
            default = get_default_profile()
            if default.found:
                account_id, role_name = default.account_id, default.role_name
                print(f"   Default profile: {account_id}/{role_name}")

        if not account_id:
            print("\n📋 Accounts:")
            for account in controller.list_accounts():
                print(f"   {account.account_id}  {account.account_name or ''}")
            return True

        if not role_name:
            print(f"\n📋 Roles in {account_id}:")
            for role in controller.list_roles(account_id):
                print(f"   {role.role_name}")
            return True

        credentials = controller.get_credentials(account_id, role_name)
        print(f"\n🔑 Credentials for {account_id}/{role_name} "
              f"(expire {credentials.expiration.isoformat()}):\n")
        for name, value in credentials.as_env(controller.region).items():
            print(f"export {name}={value}")

        if make_default:
            set_default_profile(
                account_id, role_name,
                start_url=controller.start_url,
                region=controller.region
            )
            print(f"\n✅ Default profile set to {account_id}/{role_name}")

    except AuthenticationExpired as e:
        logger.error(f"Session rejected: {e.detail}")
        print(f"\n❌ {e}")
        return False
    except SsoError as e:
        logger.error(f"SSO login failed: {e}")
        print(f"\n❌ Error: {e}")
        return False
    finally:
        controller.shutdown()

    return True


def sso_logout(settings: SsoSettings) -> bool:
    """Clear the saved session."""
    controller = SessionController(settings=settings)
    controller.restore()
    controller.logout()
    print("✅ Logged out")
    return True


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Log in to AWS SSO and fetch role credentials"
    )

    parser.add_argument(
        "--region",
        help="SSO region (default: $AWS_SSO_REGION)"
    )

    parser.add_argument(
        "--start-url",
        help="SSO portal start URL (default: $AWS_SSO_START_URL)"
    )

    parser.add_argument(
        "--account",
        help="Account ID to fetch credentials for"
    )

    parser.add_argument(
        "--role",
        help="Role name to fetch credentials for"
    )

    parser.add_argument(
        "--set-default-profile",
        action="store_true",
        help="Write the account and role to the [default] profile in ~/.aws/config"
    )

    parser.add_argument(
        "--logout",
        action="store_true",
        help="Clear the saved session and exit"
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args()

    # Set verbose logging if requested
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = SsoSettings.from_env()
    if args.region:
        settings.region = args.region
    if args.start_url:
        settings.start_url = args.start_url

    if args.logout:
        success = sso_logout(settings)
    else:
        success = sso_login(
            settings,
            account_id=args.account,
            role_name=args.role,
            make_default=args.set_default_profile
        )

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
