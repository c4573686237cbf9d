"""Configuration management for tordirect.

Provides centralized configuration with TOML support, validation, and
hierarchical loading from defaults → config file → environment → CLI.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError as PydanticValidationError

from tordirect.models import Config
from tordirect.utils.exceptions import ConfigurationError
from tordirect.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)

CONFIG_FILE_NAME = "tordirect.toml"

# Unprefixed variables honored for existing deployments.
# Applied before the TORDIRECT_* variables so the latter win.
LEGACY_ENV_MAPPINGS: dict[str, str] = {
    "DOWNLOAD_PATH": "storage.root",
    "PORT": "gateway.port",
}

ENV_MAPPINGS: dict[str, str] = {
    # Storage
    "TORDIRECT_STORAGE_ROOT": "storage.root",
    "TORDIRECT_LOG_FILE_NAME": "storage.log_file_name",
    "TORDIRECT_PROBE_TIMEOUT": "storage.probe_timeout",
    # Gateway
    "TORDIRECT_HOST": "gateway.host",
    "TORDIRECT_PORT": "gateway.port",
    "TORDIRECT_WEBSOCKET_HEARTBEAT_INTERVAL": "gateway.websocket_heartbeat_interval",
    "TORDIRECT_STREAM_CHUNK_SIZE": "gateway.stream_chunk_size",
    # Broadcast
    "TORDIRECT_THROTTLE_WINDOW": "broadcast.throttle_window",
    "TORDIRECT_OBSERVER_QUEUE_SIZE": "broadcast.observer_queue_size",
    # Source
    "TORDIRECT_SOURCE_FACTORY": "source.factory",
    # Observability
    "TORDIRECT_LOG_LEVEL": "observability.log_level",
    "TORDIRECT_LOG_FILE": "observability.log_file",
    "TORDIRECT_STRUCTURED_LOGGING": "observability.structured_logging",
    "TORDIRECT_LOG_CORRELATION_ID": "observability.log_correlation_id",
}

_config_manager: ConfigManager | None = None


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Loads and validates the tordirect configuration."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches the
                standard locations for tordirect.toml
            overrides: Nested values applied last, typically from CLI flags

        """
        self.config_file = self._find_config_file(config_file)
        self.overrides = overrides or {}
        self.config = self._load_config()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file).expanduser()
            if not path.exists():
                msg = f"Configuration file not found: {path}"
                raise ConfigurationError(msg, {"path": str(path)})
            return path

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "tordirect" / CONFIG_FILE_NAME,
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file, environment and overrides."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg, {"path": str(self.config_file)}) from e
            logger.debug("Loaded configuration from %s", self.config_file)

        config_data = self._merge_config(config_data, self._get_env_config())
        config_data = self._merge_config(config_data, self.overrides)

        try:
            return Config(**config_data)
        except PydanticValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables.

        Values are passed through as strings; pydantic coerces them to the
        field types during validation.
        """
        env_config: dict[str, Any] = {}

        for mappings in (LEGACY_ENV_MAPPINGS, ENV_MAPPINGS):
            for env_name, cfg_path in mappings.items():
                raw = os.getenv(env_name)
                if raw is None or raw == "":
                    continue
                _set_nested(env_config, cfg_path, raw)

        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def export(self) -> str:
        """Export the current configuration as TOML."""
        data = self.config.model_dump(mode="json", exclude_none=True)
        return toml.dumps(data)

    def setup_logging(self) -> None:
        """Set up logging from the observability section."""
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(
    config_file: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
    configure_logging: bool = True,
) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file, overrides)
    if configure_logging:
        _config_manager.setup_logging()
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime.

    Components that snapshot config must re-read values to pick up changes.
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None)
    _config_manager.config = new_config


def reset_config() -> None:
    """Drop the global configuration so the next access reloads it."""
    global _config_manager
    _config_manager = None
