"""Brute-force lockout for login attempts.

Failures are counted per client address in the shared store. The counter
expires one window after the first failure; once it reaches
``max_attempts`` the address is locked until the key expires or a
successful login clears it.
"""

from __future__ import annotations

import logging

from trackgate.models import LockoutConfig
from trackgate.security.address import InvalidAddress, to_integer
from trackgate.storage.keys import StoreKeys
from trackgate.storage.kv_store import KeyValueStore
from trackgate.utils.events import EventPriority, EventType, emit_security_event

logger = logging.getLogger(__name__)


class LockoutGuard:
    """Counts failed logins per address and locks noisy addresses out."""

    def __init__(
        self,
        kv_store: KeyValueStore,
        config: LockoutConfig | None = None,
        keys: StoreKeys | None = None,
    ):
        self.kv_store = kv_store
        self.config = config or LockoutConfig()
        self.keys = keys or StoreKeys()

    def _key(self, address: str) -> str:
        # v4 and v4-mapped forms of one client share a counter
        value = to_integer(address)
        if isinstance(value, InvalidAddress):
            return self.keys.login_attempts(address.strip())
        return self.keys.login_attempts(value)

    async def failure_count(self, address: str) -> int:
        raw = await self.kv_store.get(self._key(address))
        return int(raw) if raw is not None else 0

    async def is_locked(self, address: str) -> bool:
        """Return True if ``address`` has used up its attempts."""
        return await self.failure_count(address) >= self.config.max_attempts

    async def record_failure(self, address: str) -> int:
        """Count one failed login and return the updated count."""
        count = await self.kv_store.incr_with_expiry(self._key(address), self.config.window)
        if count == self.config.max_attempts:
            logger.warning(
                "Address %s locked out after %d failed logins", address, count
            )
            await emit_security_event(
                EventType.LOGIN_LOCKED_OUT,
                "lockout",
                EventPriority.HIGH,
                address=address,
                attempts=count,
                window=self.config.window,
            )
        else:
            logger.debug("Failed login %d from %s", count, address)
        return count

    async def clear(self, address: str) -> None:
        """Forget all failures for ``address``."""
        await self.kv_store.delete(self._key(address))

    async def remaining_seconds(self, address: str) -> float:
        """Seconds until the counter for ``address`` expires (0 if none)."""
        remaining = await self.kv_store.ttl(self._key(address))
        return remaining or 0.0
