"""Pytest configuration and shared fixtures for trackgate tests."""

from __future__ import annotations

import logging
import os

import pytest
import pytest_asyncio
from argon2 import PasswordHasher, Type

from trackgate.models import Config, Identity, Role
from trackgate.security.passwords import Argon2PasswordVerifier
from trackgate.storage.ban_store import MemoryBanStore
from trackgate.storage.identity import MemoryIdentityStore, MemoryResourceStore
from trackgate.storage.kv_store import MemoryStore
from trackgate.utils.events import get_event_bus

SECRET = "x" * 48
START_TIME = 1_700_000_000.0


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("slow", "marks tests as slow (deselect with '-m \"not slow\"')"),
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("security", "marks tests as security tests"),
        ("storage", "marks tests as storage tests"),
        ("tracker", "marks tests as tracker tests"),
        ("cli", "marks tests as CLI tests"),
        ("config", "marks tests as configuration tests"),
        ("observability", "marks tests as observability tests"),
        ("resilience", "marks tests as resilience pattern tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def cleanup_event_bus():
    """Give every test an empty global event bus."""
    get_event_bus().clear()
    yield
    get_event_bus().clear()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    """Keep developer config files and TRACKGATE_* variables out of tests."""
    for name in list(os.environ):
        if name.startswith("TRACKGATE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Deterministic clock shared by stores and services."""
    return FakeClock()


@pytest.fixture
def kv_store(clock):
    """In-process shared store driven by the fake clock."""
    return MemoryStore(clock=clock, lock_blocking_timeout=1.0)


@pytest.fixture
def ban_store():
    """Ban store without persistence."""
    return MemoryBanStore()


@pytest.fixture
def resource_store():
    """Resource store with one known torrent."""
    return MemoryResourceStore(["aa" * 20])


@pytest.fixture
def password_verifier():
    """Argon2 verifier with minimal cost parameters."""
    return Argon2PasswordVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest_asyncio.fixture
async def identity_store(password_verifier):
    """Identity store with a regular user and an admin."""
    store = MemoryIdentityStore()
    await store.upsert(
        Identity(
            id=1,
            handle="alice",
            email="alice@example.com",
            passkey="a" * 32,
            password_hash=password_verifier.hash("correct horse"),
        )
    )
    await store.upsert(
        Identity(
            id=2,
            handle="root",
            role=Role.ADMIN,
            passkey="b" * 32,
            password_hash=password_verifier.hash("hunter22"),
        )
    )
    return store


@pytest.fixture
def config():
    """Configuration with a signing secret and the memory backend."""
    return Config(
        store={"backend": "memory"},
        credentials={"signing_secret": SECRET},
    )
