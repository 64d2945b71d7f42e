"""Configuration management for trackgate.

Provides centralized configuration with TOML support and validation, loaded
hierarchically from defaults -> config file -> environment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml

from trackgate.models import Config
from trackgate.utils.exceptions import ConfigurationError
from trackgate.utils.logging_config import setup_logging

# Global configuration instance
_config_manager: ConfigManager | None = None

ENV_MAPPINGS: dict[str, str] = {
    # Store
    "TRACKGATE_STORE_BACKEND": "store.backend",
    "TRACKGATE_REDIS_URL": "store.redis_url",
    "TRACKGATE_KEY_PREFIX": "store.key_prefix",
    "TRACKGATE_STORE_TIMEOUT": "store.operation_timeout",
    "TRACKGATE_LOCK_TIMEOUT": "store.lock_timeout",
    "TRACKGATE_LOCK_BLOCKING_TIMEOUT": "store.lock_blocking_timeout",
    "TRACKGATE_BAN_STORE_PATH": "store.ban_store_path",
    "TRACKGATE_IDENTITY_STORE_PATH": "store.identity_store_path",
    # Credentials
    "TRACKGATE_SIGNING_SECRET": "credentials.signing_secret",
    "TRACKGATE_SIGNING_ALGORITHM": "credentials.algorithm",
    "TRACKGATE_CREDENTIAL_LIFETIME": "credentials.lifetime",
    "TRACKGATE_CREDENTIAL_ISSUER": "credentials.issuer",
    "TRACKGATE_CREDENTIAL_AUDIENCE": "credentials.audience",
    # Lockout
    "TRACKGATE_LOCKOUT_MAX_ATTEMPTS": "lockout.max_attempts",
    "TRACKGATE_LOCKOUT_WINDOW": "lockout.window",
    # Bans
    "TRACKGATE_BAN_SWEEP_INTERVAL": "bans.sweep_interval",
    "TRACKGATE_BAN_CACHE_TTL": "bans.account_cache_ttl",
    # Admission
    "TRACKGATE_CREDENTIAL_MODE": "admission.credential_mode",
    "TRACKGATE_FAIL_OPEN_MALFORMED_ADDRESS": "admission.fail_open_on_malformed_address",
    "TRACKGATE_TRUST_PROXY": "admission.trust_proxy",
    # Tracker
    "TRACKGATE_TRACKER_HOST": "tracker.host",
    "TRACKGATE_TRACKER_PORT": "tracker.port",
    "TRACKGATE_ANNOUNCE_INTERVAL": "tracker.announce_interval",
    # Observability
    "TRACKGATE_LOG_LEVEL": "observability.log_level",
    "TRACKGATE_LOG_FILE": "observability.log_file",
    "TRACKGATE_STRUCTURED_LOGGING": "observability.structured_logging",
}

# Values that must stay strings even when they look numeric or boolean
_STRING_PATHS = {
    "store.redis_url",
    "store.key_prefix",
    "credentials.signing_secret",
    "credentials.issuer",
    "credentials.audience",
    "tracker.host",
}


def _parse_env_value(raw: str, cfg_path: str) -> Any:
    if cfg_path in _STRING_PATHS:
        return raw
    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_file: str | Path | None = None, setup_logs: bool = True):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for trackgate.toml
            setup_logs: Configure logging from the loaded observability section

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        if setup_logs:
            self.configure_logging()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / "trackgate.toml",
            Path.home() / ".config" / "trackgate" / "trackgate.toml",
            Path.home() / ".trackgate.toml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file and self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e

        env_config = self._get_env_config()
        config_data = self._merge_config(config_data, env_config)

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))
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
        """Export current configuration as TOML with the signing secret masked."""
        data = self.config.model_dump(mode="json")
        if data["credentials"].get("signing_secret"):
            data["credentials"]["signing_secret"] = "********"
        return toml.dumps(_drop_none(data))

    def configure_logging(self) -> None:
        """Apply the ``observability`` section to the logging system."""
        setup_logging(self.config.observability)


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    # TOML has no null
    return {
        key: _drop_none(value) if isinstance(value, dict) else value
        for key, value in data.items()
        if value is not None
    }


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(
    config_file: str | Path | None = None, setup_logs: bool = True
) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file, setup_logs=setup_logs)
    return _config_manager


def reload_config() -> Config:
    """Reload configuration from file."""
    if _config_manager is None:
        msg = "Configuration not initialized"
        raise ConfigurationError(msg)

    _config_manager.config = _config_manager._load_config()  # noqa: SLF001
    _config_manager.configure_logging()
    logging.getLogger(__name__).info("Configuration reloaded")
    return _config_manager.config


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None, setup_logs=False)
    _config_manager.config = new_config
    _config_manager.configure_logging()
