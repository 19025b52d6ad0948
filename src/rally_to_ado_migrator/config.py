"""Run settings and secret resolution."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from . import utils
from .exceptions import ConfigurationError
from .retry import RequestThrottle, RetryPolicy

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_RALLY_SERVER: Final[str] = "https://rally1.rallydev.com"
DEFAULT_MAPPING_TABLE: Final[str] = "rally-ado-mapping.json"

_RALLY_KEY_ENV_VAR: Final[str] = "RALLY_API_KEY"
_ADO_PAT_ENV_VAR: Final[str] = "ADO_PAT"
_DEFAULT_RALLY_PASS_PATH: Final[str] = "rally/api_key"
_DEFAULT_ADO_PASS_PATH: Final[str] = "azure-devops/pat"  # noqa: S105


def get_secret(pass_path: str | None, env_var: str, default_pass_path: str, what: str) -> str | None:
    """Get a secret from pass path, environment variable, or default pass location."""
    # Try pass path first
    if pass_path:
        return utils.get_pass_value(pass_path)

    # Try environment variable
    value: str | None = os.environ.get(env_var)
    if value:
        return value

    # Try default pass path
    try:
        return utils.get_pass_value(default_pass_path)
    except (ValueError, utils.PassError):
        logger.warning(f"No {what} specified nor found")
        return None


def get_rally_api_key(pass_path: str | None = None) -> str | None:
    """Get the Rally API key from pass path, env var RALLY_API_KEY, or default pass location."""
    return get_secret(pass_path, _RALLY_KEY_ENV_VAR, _DEFAULT_RALLY_PASS_PATH, "Rally API key")


def get_ado_token(pass_path: str | None = None) -> str | None:
    """Get the Azure DevOps PAT from pass path, env var ADO_PAT, or default pass location."""
    return get_secret(pass_path, _ADO_PAT_ENV_VAR, _DEFAULT_ADO_PASS_PATH, "Azure DevOps token")


@dataclass(frozen=True)
class MigrationSettings:
    """Connection and tuning settings for one run."""

    rally_api_key: str
    ado_organization_url: str
    ado_project: str
    ado_pat: str
    rally_server: str = DEFAULT_RALLY_SERVER
    rally_workspace: str | None = None
    rally_project: str | None = None
    mapping_config_path: Path | None = None
    mapping_table_path: Path = Path(DEFAULT_MAPPING_TABLE)
    max_concurrent_requests: int = 4
    request_timeout: float = 60.0
    retry_attempts: int = 4
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    bypass_rules: bool = False
    dry_run: bool = False

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def throttle(self) -> RequestThrottle:
        return RequestThrottle(self.max_concurrent_requests)


def load_settings(
    *,
    rally_pass_path: str | None = None,
    ado_pass_path: str | None = None,
    rally_server: str | None = None,
    rally_workspace: str | None = None,
    rally_project: str | None = None,
    ado_organization_url: str | None = None,
    ado_project: str | None = None,
    mapping_config_path: str | None = None,
    mapping_table_path: str | None = None,
    max_concurrent_requests: int = 4,
    bypass_rules: bool = False,
    dry_run: bool = False,
) -> MigrationSettings:
    """Combine explicit arguments with environment fallbacks.

    Raises:
        ConfigurationError: If a required setting is missing
    """
    settings = {
        "ado_organization_url": ado_organization_url or os.environ.get("ADO_ORGANIZATION_URL"),
        "ado_project": ado_project or os.environ.get("ADO_PROJECT"),
        "rally_api_key": get_rally_api_key(rally_pass_path),
        "ado_pat": get_ado_token(ado_pass_path),
    }
    missing = [name for name, value in settings.items() if not value]
    if missing:
        msg = f"Missing required settings: {', '.join(missing)}"
        raise ConfigurationError(msg)

    if max_concurrent_requests < 1:
        msg = "The number of concurrent requests must be at least 1"
        raise ConfigurationError(msg)

    return MigrationSettings(
        rally_api_key=str(settings["rally_api_key"]),
        ado_organization_url=str(settings["ado_organization_url"]).rstrip("/"),
        ado_project=str(settings["ado_project"]),
        ado_pat=str(settings["ado_pat"]),
        rally_server=(rally_server or os.environ.get("RALLY_SERVER") or DEFAULT_RALLY_SERVER).rstrip("/"),
        rally_workspace=rally_workspace or os.environ.get("RALLY_WORKSPACE"),
        rally_project=rally_project or os.environ.get("RALLY_PROJECT"),
        mapping_config_path=Path(mapping_config_path) if mapping_config_path else None,
        mapping_table_path=Path(mapping_table_path or DEFAULT_MAPPING_TABLE),
        max_concurrent_requests=max_concurrent_requests,
        bypass_rules=bypass_rules,
        dry_run=dry_run,
    )
