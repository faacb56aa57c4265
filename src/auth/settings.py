"""
Login parameters for the SSO session.
"""

import os
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

from src.auth.exceptions import ConfigurationError
from src.auth.session_timer import SESSION_DURATION


@dataclass
class SsoSettings:
    """SSO login parameters."""
    region: Optional[str] = None
    start_url: Optional[str] = None
    client_name: str = "aws-sso-switcher"
    app_name: str = "aws-sso-switcher"
    session_duration: float = SESSION_DURATION

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "SsoSettings":
        """
        Build settings from AWS_SSO_REGION, AWS_SSO_START_URL and
        AWS_SSO_CLIENT_NAME.
        """
        environ = os.environ if environ is None else environ
        settings = cls(
            region=environ.get("AWS_SSO_REGION") or None,
            start_url=environ.get("AWS_SSO_START_URL") or None,
        )
        if environ.get("AWS_SSO_CLIENT_NAME"):
            settings.client_name = environ["AWS_SSO_CLIENT_NAME"]
        return settings

    def validate(self) -> List[str]:
        """
        Validate login parameters.

        Returns:
            A list of human-readable error strings. Empty if valid.
        """
        errors: List[str] = []
        if not self.region:
            errors.append("SSO region not configured")
        if not self.start_url:
            errors.append("SSO start URL not configured")
        else:
            parsed = urlparse(self.start_url)
            if parsed.scheme != "https" or not parsed.netloc:
                errors.append(f"Invalid SSO start URL '{self.start_url}': must be an https:// URL")
        if self.session_duration <= 0:
            errors.append("Session duration must be positive")
        return errors

    def require(self):
        """Raise ConfigurationError if the settings are not usable."""
        errors = self.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
