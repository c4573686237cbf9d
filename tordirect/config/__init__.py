"""Configuration management.

Loads configuration from defaults, TOML files and environment variables.
"""

from __future__ import annotations

from tordirect.config.config import ConfigManager, get_config, init_config

__all__ = [
    "ConfigManager",
    "get_config",
    "init_config",
]
