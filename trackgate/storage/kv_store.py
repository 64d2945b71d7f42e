"""Shared key-value store backends.

The shared store holds the ephemeral admission state (lockout counters,
credential denylist, cached ban verdicts) and the per-account locks that
serialize ban reconciliation. ``RedisStore`` is the production backend;
``MemoryStore`` keeps the same contract inside one process.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable, Protocol, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError

from trackgate.models import StoreBackend
from trackgate.utils.exceptions import StoreUnavailableError
from trackgate.utils.resilience import bounded

if TYPE_CHECKING:  # pragma: no cover
    from contextlib import AbstractAsyncContextManager

    from trackgate.models import StoreConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# INCR and the first-write PEXPIRE run as one script so concurrent failures
# from the same address can neither lose an update nor skip the expiry.
_INCR_WITH_EXPIRY = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""

# Writes KEYS[1] only while KEYS[2] still holds ARGV[2] (empty string for a
# missing key), so a value computed before a concurrent change is dropped.
_SET_IF_UNCHANGED = """
local current = redis.call('GET', KEYS[2])
if current == false then
    current = ''
end
if current ~= ARGV[2] then
    return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[3])
return 1
"""


class KeyValueStore(Protocol):
    """Contract of the shared store."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: float | None = None) -> None: ...

    async def incr_with_expiry(self, key: str, ttl: float) -> int: ...

    async def incr(self, key: str) -> int: ...

    async def set_if_unchanged(
        self,
        key: str,
        value: str,
        ttl: float,
        guard_key: str,
        expected: str | None,
    ) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> float | None: ...

    def lock(self, name: str) -> AbstractAsyncContextManager[None]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class MemoryStore:
    """In-process store with TTL support.

    Each mutating method completes without yielding to the event loop, which
    makes it atomic with respect to other tasks on the same loop.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        lock_blocking_timeout: float = 5.0,
    ):
        """Initialize memory store.

        Args:
            clock: Time source used for TTL expiry
            lock_blocking_timeout: Seconds to wait for a named lock

        """
        self._data: dict[str, tuple[str, float | None]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._clock = clock
        self.lock_blocking_timeout = lock_blocking_timeout

    def _live(self, key: str) -> tuple[str, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        return entry[0] if entry else None

    def _put(self, key: str, value: str, ttl: float | None) -> None:
        if ttl is not None and ttl <= 0:
            self._data.pop(key, None)
            return
        expires_at = self._clock() + ttl if ttl is not None else None
        self._data[key] = (str(value), expires_at)

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        self._put(key, value, ttl)

    async def incr_with_expiry(self, key: str, ttl: float) -> int:
        entry = self._live(key)
        if entry is None:
            self._data[key] = ("1", self._clock() + ttl)
            return 1
        count = int(entry[0]) + 1
        self._data[key] = (str(count), entry[1])
        return count

    async def incr(self, key: str) -> int:
        entry = self._live(key)
        count = int(entry[0]) + 1 if entry else 1
        self._data[key] = (str(count), entry[1] if entry else None)
        return count

    async def set_if_unchanged(
        self,
        key: str,
        value: str,
        ttl: float,
        guard_key: str,
        expected: str | None,
    ) -> bool:
        """Set ``key`` only if ``guard_key`` still holds ``expected``."""
        entry = self._live(guard_key)
        if (entry[0] if entry else None) != expected:
            return False
        self._put(key, value, ttl)
        return True

    async def delete(self, key: str) -> bool:
        existed = self._live(key) is not None
        self._data.pop(key, None)
        return existed

    async def ttl(self, key: str) -> float | None:
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return max(0.0, entry[1] - self._clock())

    @contextlib.asynccontextmanager
    async def lock(self, name: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(name, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.lock_blocking_timeout)
        except asyncio.TimeoutError:
            msg = f"Could not acquire lock {name}"
            raise StoreUnavailableError(msg, {"lock": name}) from None
        try:
            yield
        finally:
            lock.release()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
        self._locks.clear()


class RedisStore:
    """Shared store backed by Redis through ``redis.asyncio``."""

    def __init__(
        self,
        client: aioredis.Redis,
        operation_timeout: float = 1.0,
        lock_timeout: float = 10.0,
        lock_blocking_timeout: float = 5.0,
    ):
        """Initialize Redis store.

        Args:
            client: Redis client created with ``decode_responses=True``
            operation_timeout: Upper bound for each round-trip in seconds
            lock_timeout: Seconds before a held lock auto-releases
            lock_blocking_timeout: Seconds to wait when acquiring a lock

        """
        self._client = client
        self._incr_script = client.register_script(_INCR_WITH_EXPIRY)
        self._guarded_set_script = client.register_script(_SET_IF_UNCHANGED)
        self.operation_timeout = operation_timeout
        self.lock_timeout = lock_timeout
        self.lock_blocking_timeout = lock_blocking_timeout

    @classmethod
    def from_config(cls, config: StoreConfig) -> RedisStore:
        """Create a store from the ``store`` configuration section."""
        client = aioredis.from_url(
            config.redis_url,
            decode_responses=True,
            socket_timeout=config.operation_timeout,
            socket_connect_timeout=config.operation_timeout,
        )
        return cls(
            client,
            operation_timeout=config.operation_timeout,
            lock_timeout=config.lock_timeout,
            lock_blocking_timeout=config.lock_blocking_timeout,
        )

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await bounded(awaitable, self.operation_timeout, f"redis {operation}")
        except RedisError as e:
            logger.warning("Redis %s failed: %s", operation, e)
            msg = f"redis {operation} failed: {e}"
            raise StoreUnavailableError(msg, {"operation": operation}) from e

    async def get(self, key: str) -> str | None:
        return await self._call("get", self._client.get(key))

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        if ttl is not None and ttl <= 0:
            await self.delete(key)
            return
        px = max(1, int(ttl * 1000)) if ttl is not None else None
        await self._call("set", self._client.set(key, value, px=px))

    async def incr_with_expiry(self, key: str, ttl: float) -> int:
        ttl_ms = max(1, int(ttl * 1000))
        result = await self._call(
            "incr", self._incr_script(keys=[key], args=[ttl_ms])
        )
        return int(result)

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", self._client.incr(key)))

    async def set_if_unchanged(
        self,
        key: str,
        value: str,
        ttl: float,
        guard_key: str,
        expected: str | None,
    ) -> bool:
        """Set ``key`` only if ``guard_key`` still holds ``expected``."""
        if ttl <= 0:
            return False
        ttl_ms = max(1, int(ttl * 1000))
        result = await self._call(
            "guarded set",
            self._guarded_set_script(
                keys=[key, guard_key],
                args=[value, "" if expected is None else expected, ttl_ms],
            ),
        )
        return bool(result)

    async def delete(self, key: str) -> bool:
        return bool(await self._call("delete", self._client.delete(key)))

    async def ttl(self, key: str) -> float | None:
        remaining_ms = await self._call("pttl", self._client.pttl(key))
        # -2: missing key, -1: no expiry
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000.0

    @contextlib.asynccontextmanager
    async def lock(self, name: str) -> AsyncIterator[None]:
        lock = self._client.lock(
            name,
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_blocking_timeout,
        )
        acquired = await self._call_lock(name, lock)
        if not acquired:
            msg = f"Could not acquire lock {name}"
            raise StoreUnavailableError(msg, {"lock": name})
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Held past lock_timeout; another holder may already own it
                logger.warning("Lock %s expired before release", name)
            except RedisError as e:
                logger.warning("Failed to release lock %s: %s", name, e)

    async def _call_lock(self, name: str, lock: aioredis.lock.Lock) -> bool:
        try:
            return bool(
                await bounded(
                    lock.acquire(),
                    self.lock_blocking_timeout + self.operation_timeout,
                    f"redis lock {name}",
                )
            )
        except RedisError as e:
            logger.warning("Redis lock %s failed: %s", name, e)
            msg = f"redis lock {name} failed: {e}"
            raise StoreUnavailableError(msg, {"lock": name}) from e

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._client.ping()))

    async def close(self) -> None:
        await self._client.aclose()


def create_store(
    config: StoreConfig, clock: Callable[[], float] = time.time
) -> KeyValueStore:
    """Build the shared store selected by ``config.backend``."""
    if config.backend == StoreBackend.MEMORY:
        logger.info("Using in-process memory store")
        return MemoryStore(clock=clock, lock_blocking_timeout=config.lock_blocking_timeout)
    logger.info("Using Redis store at %s", config.redis_url)
    return RedisStore.from_config(config)
