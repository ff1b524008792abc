"""Configuration management for the risk governor.

Settings live in a YAML file (``config/default.yaml``); deployment-specific
values such as the database path or the venue positions endpoint can be
overridden from a ``.env`` file or the process environment.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from src.utils.exceptions import ConfigurationError

ROOT_DIR = Path(__file__).parent.parent.parent

# Environment variable -> dotted config key
ENV_OVERRIDES = {
    "RISK_DB_PATH": "database.path",
    "VENUE_POSITIONS_URL": "reconciler.positions_url",
    "LOG_LEVEL": "logging.level",
}


class Config:
    """Simple configuration loader and accessor.

    Loads YAML configuration files and provides dict-like access to settings.

    Example:
        >>> config = Config.from_file("config/default.yaml")
        >>> max_loss = config.get("risk.gate.max_daily_loss_usd", 100)
    """

    def __init__(self, config_dict: dict[str, Any]) -> None:
        """Initialize with configuration dictionary.

        Args:
            config_dict: Configuration data as nested dictionary
        """
        self._config = config_dict

    @classmethod
    def from_file(cls, filepath: str | Path) -> "Config":
        """Load configuration from YAML file.

        Args:
            filepath: Path to YAML configuration file

        Returns:
            Config instance with loaded configuration

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If YAML parsing fails
        """
        path = Path(filepath)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {filepath}")

        with open(path, "r", encoding="utf-8") as f:
            config_dict = yaml.safe_load(f)

        if config_dict is None:
            config_dict = {}

        return cls(config_dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key: Configuration key (supports dot notation for nested keys)
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            >>> config.get("drift.performance_window")
            50
            >>> config.get("missing.key", "fallback")
            'fallback'
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def section(self, key: str) -> dict[str, Any]:
        """Get a nested section as a plain dictionary.

        Missing or non-mapping sections yield an empty dict, so component
        constructors can always fall back to their defaults.
        """
        value = self.get(key, {})
        return dict(value) if isinstance(value, dict) else {}

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value using dot notation.

        Intermediate sections are created as needed.
        """
        keys = key.split(".")
        node = self._config
        for k in keys[:-1]:
            child = node.get(k)
            if not isinstance(child, dict):
                child = {}
                node[k] = child
            node = child
        node[keys[-1]] = value

    def __getitem__(self, key: str) -> Any:
        """Get configuration value using bracket notation.

        Raises:
            KeyError: If key not found
        """
        value = self.get(key)
        if value is None:
            raise KeyError(f"Configuration key not found: {key}")
        return value

    def to_dict(self) -> dict[str, Any]:
        """Get the full configuration as dictionary."""
        return self._config.copy()


def load_config(filepath: str | Path = None) -> Config:
    """Helper function to load configuration.

    Args:
        filepath: Path to YAML configuration file. If None, uses default path.

    Returns:
        Config instance
    """
    if filepath is None:
        filepath = ROOT_DIR / "config" / "default.yaml"
    return Config.from_file(filepath)


def load_governor_config(
    config_file: str | Path = None,
    env_file: str | Path = None,
) -> Config:
    """Load the YAML configuration and apply environment overrides.

    The ``.env`` file is optional. Values already present in the process
    environment take precedence over it (python-dotenv default).

    Args:
        config_file: Path to YAML file. If None, uses config/default.yaml.
        env_file: Path to .env file. If None, uses <project root>/.env.

    Returns:
        Config with overrides applied

    Raises:
        ConfigurationError: If the YAML file is missing

    Example:
        >>> config = load_governor_config()
        >>> config.get("database.path")
        'data/risk.db'
    """
    if env_file is None:
        env_file = ROOT_DIR / ".env"
    if Path(env_file).exists():
        load_dotenv(env_file)

    try:
        config = load_config(config_file)
    except FileNotFoundError as e:
        raise ConfigurationError(str(e)) from e

    for env_var, key in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value:
            config.set(key, value)

    return config
