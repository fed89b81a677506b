"""
SecureMsg - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Author: orpheus497
Version: 1.0.0
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_ONE_TIME_PREKEYS,
    DEFAULT_RELAY_HOST,
    DEFAULT_RELAY_PORT,
    RELAY_REQUEST_TIMEOUT,
    RELAY_RETRY_ATTEMPTS,
    RELAY_RETRY_DELAY,
    RELAY_STORAGE_FILENAME,
)
from .errors import ConfigError, ErrorCode

ENV_PREFIX = "SECUREMSG"

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "relay": {
        "host": DEFAULT_RELAY_HOST,
        "port": DEFAULT_RELAY_PORT,
        "timeout": float(RELAY_REQUEST_TIMEOUT),
        "retry_attempts": RELAY_RETRY_ATTEMPTS,
        "retry_delay": RELAY_RETRY_DELAY,
        "storage_file": RELAY_STORAGE_FILENAME,
    },
    "client": {
        "data_dir": DEFAULT_DATA_DIR,
        "one_time_prekeys": DEFAULT_ONE_TIME_PREKEYS,
    },
    "vault": {
        "time_cost": ARGON2_TIME_COST,
        "memory_cost": ARGON2_MEMORY_COST,
        "parallelism": ARGON2_PARALLELISM,
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": True,
    },
}


class Config:
    """Configuration manager for SecureMsg.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Raises:
            ConfigError: If the configuration file cannot be parsed
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                    code=ErrorCode.E704_CONFIG_PARSE_ERROR,
                ) from e
            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: SECUREMSG_SECTION_KEY
        For example: SECUREMSG_RELAY_PORT=3001
        """
        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key, current in settings.items():
                env_value = os.environ.get(f"{ENV_PREFIX}_{section.upper()}_{key.upper()}")
                if env_value is None:
                    continue

                original_type = type(current)
                try:
                    if original_type == bool:
                        settings[key] = env_value.lower() in ("true", "1", "yes")
                    elif original_type == int:
                        settings[key] = int(env_value)
                    elif original_type == float:
                        settings[key] = float(env_value)
                    else:
                        settings[key] = env_value
                except ValueError:
                    # Keep original value if conversion fails
                    pass

        return config

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        self.data.setdefault(section, {})[key] = value

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                self._write_toml(f, self.data)
        except OSError as e:
            raise ConfigError(
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
                code=ErrorCode.E702_CONFIG_SAVE_FAILED,
            ) from e

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write flat [section] tables as TOML."""
        for section, settings in data.items():
            if not isinstance(settings, dict):
                continue
            file.write(f"[{section}]\n")
            for key, value in settings.items():
                if isinstance(value, bool):
                    file.write(f"{key} = {str(value).lower()}\n")
                elif isinstance(value, (int, float)):
                    file.write(f"{key} = {value}\n")
                elif isinstance(value, str):
                    file.write(f'{key} = "{value}"\n')
            file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)
