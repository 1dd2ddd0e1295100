"""
Broker Console - Configuration Manager
========================================
Handles loading of process configuration from two sources:

1. config.yaml  - Non-sensitive settings (listener addresses, data dir, TTLs)
2. .env         - Secrets and deployment overrides (JWT_SECRET, *_PORT)

Operator-tunable runtime settings (TLS, discovery) are NOT kept here; they
live in settings.json and are managed by SettingsStore (settings.py).

Usage:
    config = ConfigManager(project_dir="/path/to/console")
    settings = config.load()                 # Returns merged config dict
    secret = resolve_jwt_secret(settings)    # Signing key for TokenService
"""

import logging
import os
from typing import Any

import yaml
from dotenv import dotenv_values

from console.errors import ConfigError


logger = logging.getLogger(__name__)

# Default configuration values used when config.yaml is missing or incomplete.
# These ensure the application always has sensible defaults.
DEFAULTS = {
    "listeners": {
        "tcp": ":1883",
        "ws": ":1882",
        "management": ":8888",
    },
    "data_dir": "data",
    "production": False,
    "auth": {
        "access_ttl_minutes": 15,
        "refresh_ttl_days": 7,
    },
    "shutdown_timeout": 5.0,
}

# Environment variables that override listener addresses from config.yaml.
# An empty value disables the listener.
LISTENER_ENV = {
    "tcp": "MQTT_PORT",
    "ws": "WS_PORT",
    "management": "MGMT_PORT",
}

# Written to .env on first start so operators have something to edit.
DEFAULT_ENV = """MQTT_PORT=:1883
WS_PORT=:1882
MGMT_PORT=:8888
"""

# Fallback signing key for development only. Production mode refuses it.
DEV_JWT_SECRET = "mochi-mqtt-secret-key"


class ConfigManager:
    """
    Process configuration manager for the broker console.

    Reads config.yaml (settings) and .env (secrets), and applies environment
    overrides on top.

    Attributes:
        project_dir: Root directory of the console project.
        config_path: Full path to config.yaml.
        env_path:    Full path to .env file.
    """

    def __init__(self, project_dir: str, config_path: str | None = None):
        """
        Initialize the config manager.

        Args:
            project_dir: Absolute path to the project root directory.
            config_path: Optional explicit path to the YAML file.
        """
        self.project_dir = project_dir
        self.config_path = config_path or os.path.join(project_dir, "config.yaml")
        self.env_path = os.path.join(project_dir, ".env")

    def ensure_env_file(self) -> bool:
        """
        Create a default .env file if none exists.

        Returns:
            True if a new file was written.
        """
        if os.path.exists(self.env_path):
            return False
        with open(self.env_path, "w", encoding="utf-8") as f:
            f.write(DEFAULT_ENV)
        return True

    def load(self, environ: dict[str, str] | None = None) -> dict:
        """
        Load and merge configuration from config.yaml with defaults.

        Missing values are filled from DEFAULTS, then listener addresses,
        the JWT secret and discovery overrides are taken from the environment
        (os.environ, falling back to .env values not yet exported).

        Args:
            environ: Environment mapping to read overrides from. Defaults to
                     os.environ merged over the .env file.

        Returns:
            A dictionary containing the full configuration.

        Raises:
            ConfigError: If config.yaml exists but cannot be parsed.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
            except (yaml.YAMLError, OSError) as e:
                raise ConfigError(f"cannot read {self.config_path}: {e}") from e
            if not isinstance(user_config, dict):
                raise ConfigError(f"{self.config_path} must contain a mapping")
            _deep_merge(config, user_config)

        if environ is None:
            environ = self._environ()

        for name, var in LISTENER_ENV.items():
            if var in environ:
                config["listeners"][name] = environ[var]

        config["jwt_secret"] = environ.get("JWT_SECRET", "")
        config["mdns_enabled"] = environ.get("MDNS_ENABLED", "").lower() == "true"
        config["mdns_name"] = environ.get("MDNS_NAME", "")

        data_dir = config["data_dir"]
        if not os.path.isabs(data_dir):
            config["data_dir"] = os.path.join(self.project_dir, data_dir)

        return config

    def _environ(self) -> dict[str, str]:
        """Merge .env values under the live process environment."""
        merged: dict[str, str] = {}
        if os.path.exists(self.env_path):
            merged.update({k: v or "" for k, v in dotenv_values(self.env_path).items()})
        merged.update(os.environ)
        return merged


def resolve_jwt_secret(config: dict) -> str:
    """
    Pick the token signing key for this process.

    Args:
        config: Configuration dict from ConfigManager.load().

    Returns:
        The operator-supplied JWT_SECRET, or the development fallback.

    Raises:
        ConfigError: In production mode when no secret was supplied.
    """
    secret = config.get("jwt_secret") or ""
    if secret:
        return secret
    if config.get("production"):
        raise ConfigError("JWT_SECRET must be set when production mode is enabled")
    logger.warning("JWT_SECRET not set, using the built-in development key")
    return DEV_JWT_SECRET


# -- Helper Functions ---------------------------------------------------------

def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict[str, Any]) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
