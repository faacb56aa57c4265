"""
Default AWS CLI profile helpers.
Reads and rewrites the [default] section of ~/.aws/config so CLI tools
pick up the selected SSO account and role.
"""

import os
import logging
import tempfile
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union


logger = logging.getLogger(__name__)

DEFAULT_SECTION = "default"


def default_config_path() -> Path:
    return Path.home() / ".aws" / "config"


@dataclass(frozen=True)
class DefaultProfile:
    account_id: str = ""
    role_name: str = ""

    @property
    def found(self) -> bool:
        return bool(self.account_id and self.role_name)


def _read_config(path: Path) -> ConfigParser:
    config = ConfigParser(inline_comment_prefixes=(), interpolation=None)
    if path.exists():
        config.read(path)
    return config


def get_default_profile(path: Optional[Union[str, Path]] = None) -> DefaultProfile:
    """
    Read sso_account_id and sso_role_name from the [default] section.

    Returns:
        DefaultProfile; found is False when the file or keys are missing
    """
    path = Path(path) if path else default_config_path()

    try:
        config = _read_config(path)
    except ConfigParserError as e:
        logger.error(f"Could not parse {path}: {e}")
        return DefaultProfile()

    if not config.has_section(DEFAULT_SECTION):
        return DefaultProfile()

    section = config[DEFAULT_SECTION]
    return DefaultProfile(
        account_id=section.get("sso_account_id", "").strip(),
        role_name=section.get("sso_role_name", "").strip(),
    )


def set_default_profile(
    account_id: str,
    role_name: str,
    start_url: str,
    region: str,
    path: Optional[Union[str, Path]] = None
) -> DefaultProfile:
    """
    Replace the [default] section with an SSO profile, keeping other sections.

    Args:
        account_id: SSO account ID
        role_name: SSO role name
        start_url: SSO portal start URL
        region: SSO and default region
        path: Config file path (default ~/.aws/config)

    Returns:
        The profile written
    """
    path = Path(path) if path else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    config = _read_config(path)
    if config.has_section(DEFAULT_SECTION):
        config.remove_section(DEFAULT_SECTION)
    config.add_section(DEFAULT_SECTION)

    section = config[DEFAULT_SECTION]
    section["sso_start_url"] = start_url
    section["sso_region"] = region
    section["sso_account_id"] = account_id
    section["sso_role_name"] = role_name
    section["region"] = region
    section["output"] = "json"

    # Atomic write using temporary file
    temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".config.", suffix=".tmp")
    try:
        with os.fdopen(temp_fd, "w") as f:
            config.write(f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise

    logger.info(f"Default profile set to {account_id}/{role_name} in {path}")
    return DefaultProfile(account_id=account_id, role_name=role_name)
