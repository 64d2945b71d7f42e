"""Configuration management for trackgate."""

from trackgate.config.config import (
    ConfigManager,
    get_config,
    init_config,
    reload_config,
    set_config,
)

__all__ = [
    "ConfigManager",
    "get_config",
    "init_config",
    "reload_config",
    "set_config",
]
