# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from cyberrange.core.exceptions import ConfigurationError
from cyberrange.core.types import Settings


DEFAULT_SETTINGS_FILE = "settings.cyberrange.yaml"


class SecretOverrides(BaseSettings):
    """Secrets read from the environment, overriding the YAML values.

    Example: CYBERRANGE_FLEET_PASSWORD=... overrides fleet.password.
    """

    model_config = SettingsConfigDict(
        env_prefix="CYBERRANGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    fleet_password: str | None = None
    ssh_password: str | None = None
    access_password: str | None = None
    connection_password: str | None = None


def _apply_overrides(data: dict[str, Any], overrides: SecretOverrides) -> dict[str, Any]:
    targets = {
        "fleet_password": ("fleet", "password"),
        "ssh_password": ("ssh", "password"),
        "access_password": ("access", "password"),
        "connection_password": ("access", "connection_password"),
    }
    for field, (section, key) in targets.items():
        value = getattr(overrides, field)
        if value is not None:
            data.setdefault(section, {})[key] = value
    return data


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from a YAML file.

    Resolution order:
    1. Explicit config_path parameter (if provided)
    2. CYBERRANGE_SETTINGS environment variable (if set)
    3. Default: 'settings.cyberrange.yaml' in the current directory

    Passwords can then be overridden with CYBERRANGE_* environment variables.

    Args:
        config_path: Optional explicit path to the configuration file.

    Returns:
        Settings object populated from the YAML configuration.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ConfigurationError: If the file does not hold a mapping.
        yaml.YAMLError: If the YAML file is malformed.
        pydantic.ValidationError: If the configuration fails validation.
    """
    if config_path is None:
        env_path = os.environ.get("CYBERRANGE_SETTINGS")
        config_path = Path(env_path) if env_path else Path(DEFAULT_SETTINGS_FILE)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found at {config_path}")

    with open(config_path) as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")

    return Settings(**_apply_overrides(data, SecretOverrides()))
