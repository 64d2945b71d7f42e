"""Tests for configuration loading."""

from __future__ import annotations

import logging

import pytest
import toml
from rich.logging import RichHandler

from trackgate.config import config as config_module
from trackgate.config.config import (
    ConfigManager,
    get_config,
    init_config,
    reload_config,
    set_config,
)
from trackgate.models import Config, CredentialMode, LogLevel, StoreBackend
from trackgate.utils.exceptions import ConfigurationError

pytestmark = [pytest.mark.unit, pytest.mark.config]


def test_defaults_without_file():
    config = ConfigManager(setup_logs=False).config
    assert config.store.backend == StoreBackend.REDIS
    assert config.lockout.max_attempts == 5
    assert config.lockout.window == 900
    assert config.bans.account_cache_ttl == 300
    assert config.credentials.lifetime == 900
    assert config.admission.credential_mode == CredentialMode.PASSKEY


def test_file_in_working_directory_is_found(tmp_path):
    (tmp_path / "trackgate.toml").write_text(
        toml.dumps({"lockout": {"max_attempts": 3}, "store": {"backend": "memory"}})
    )
    manager = ConfigManager(setup_logs=False)
    assert manager.config_file == tmp_path / "trackgate.toml"
    assert manager.config.lockout.max_attempts == 3
    assert manager.config.store.backend == StoreBackend.MEMORY


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.toml"
    path.write_text(toml.dumps({"lockout": {"max_attempts": 3, "window": 60.0}}))
    monkeypatch.setenv("TRACKGATE_LOCKOUT_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("TRACKGATE_TRUST_PROXY", "true")
    monkeypatch.setenv("TRACKGATE_KEY_PREFIX", "123")

    config = ConfigManager(path, setup_logs=False).config
    assert config.lockout.max_attempts == 7
    assert config.lockout.window == 60
    assert config.admission.trust_proxy is True
    assert config.store.key_prefix == "123"


@pytest.mark.parametrize(
    "data",
    [
        {"lockout": {"max_attempts": 0}},
        {"credentials": {"algorithm": "none"}},
        {"admission": {"credential_mode": "bearer"}},
        {"store": {"lock_timeout": 1.0, "lock_blocking_timeout": 2.0}},
    ],
)
def test_invalid_configuration(tmp_path, data):
    path = tmp_path / "bad.toml"
    path.write_text(toml.dumps(data))
    with pytest.raises(ConfigurationError):
        ConfigManager(path, setup_logs=False)


def test_unparseable_file(tmp_path):
    path = tmp_path / "broken.toml"
    path.write_text("[lockout\nmax_attempts = ")
    with pytest.raises(ConfigurationError):
        ConfigManager(path, setup_logs=False)


def test_export_masks_signing_secret(monkeypatch):
    monkeypatch.setenv("TRACKGATE_SIGNING_SECRET", "p" * 40)
    manager = ConfigManager(setup_logs=False)
    exported = manager.export()
    assert "p" * 40 not in exported
    assert toml.loads(exported)["credentials"]["signing_secret"] == "********"
    assert "p" * 40 not in repr(manager.config)


class TestGlobalConfig:
    """Process-wide configuration helpers."""

    @pytest.fixture(autouse=True)
    def _reset(self, monkeypatch):
        monkeypatch.setattr(config_module, "_config_manager", None)

    def test_reload_requires_init(self):
        with pytest.raises(ConfigurationError):
            reload_config()

    def test_get_config_creates_manager(self):
        assert get_config().lockout.max_attempts == 5
        assert get_config() is get_config()

    def test_init_and_reload(self, tmp_path):
        path = tmp_path / "trackgate.toml"
        path.write_text(toml.dumps({"lockout": {"max_attempts": 3}}))
        manager = init_config(path, setup_logs=False)
        assert get_config() is manager.config

        path.write_text(toml.dumps({"lockout": {"max_attempts": 9}}))
        assert reload_config().lockout.max_attempts == 9
        assert get_config().lockout.max_attempts == 9

    def test_set_config_configures_logging_once(self):
        set_config(Config(store={"backend": "memory"}))
        set_config(Config(observability={"log_level": "DEBUG"}))

        assert get_config().observability.log_level == LogLevel.DEBUG
        rich_handlers = [
            h for h in logging.getLogger("trackgate").handlers if isinstance(h, RichHandler)
        ]
        assert len(rich_handlers) == 1
        assert rich_handlers[0].level == logging.DEBUG
