"""Ban registry.

Answers whether an address or an account is banned, and owns every write
to the account ``banned`` flag. Address ranges never expire on their own;
account bans carry an optional expiry and are swept periodically, lifting
the flag once an account has no qualifying ban left.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Callable

from trackgate.models import AccountBan, AddressBan, BanConfig, Identity
from trackgate.security.address import InvalidAddress, parse_range, to_integer
from trackgate.storage.ban_store import SYSTEM_ACTOR, BanStore
from trackgate.storage.identity import IdentityStore
from trackgate.storage.keys import StoreKeys
from trackgate.storage.kv_store import KeyValueStore
from trackgate.utils.events import EventPriority, EventType, emit_security_event
from trackgate.utils.exceptions import (
    AccountNotFoundError,
    BanAlreadyInactiveError,
    BanNotFoundError,
    ValidationError,
)
from trackgate.utils.logging_config import LoggingContext

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class BanRegistry:
    """Address range bans and temporal account bans."""

    def __init__(
        self,
        ban_store: BanStore,
        identity_store: IdentityStore,
        kv_store: KeyValueStore,
        config: BanConfig | None = None,
        keys: StoreKeys | None = None,
        clock: Callable[[], float] = time.time,
        fail_open_on_malformed_address: bool = True,
    ):
        """Initialize ban registry.

        Args:
            ban_store: Persistent ban records
            identity_store: Account lookups and the ``banned`` flag
            kv_store: Shared store for the verdict cache and account locks
            config: Sweep interval, cache TTL and ban length limits
            keys: Key layout in the shared store
            clock: Time source
            fail_open_on_malformed_address: Treat unparseable addresses as
                not banned instead of banned

        """
        self.ban_store = ban_store
        self.identity_store = identity_store
        self.kv_store = kv_store
        self.config = config or BanConfig()
        self.keys = keys or StoreKeys()
        self._clock = clock
        self.fail_open_on_malformed_address = fail_open_on_malformed_address
        self._sweep_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Address bans
    # ------------------------------------------------------------------

    async def is_address_banned(self, address: str) -> bool:
        """Return True if ``address`` falls inside any banned range."""
        value = to_integer(address)
        if isinstance(value, InvalidAddress):
            logger.debug("Unparseable address %r: %s", value.address, value.reason)
            return not self.fail_open_on_malformed_address

        ban = await self.ban_store.find_address_ban_containing(value)
        if ban is not None:
            logger.debug("Address %s matched ban %d", address, ban.id)
            return True
        return False

    async def ban_address_range(
        self,
        from_address: str,
        to_address: str | None = None,
        reason: str | None = None,
    ) -> AddressBan:
        """Ban an inclusive address range.

        ``from_address`` alone may be a single address, a CIDR block or an
        ``a-b`` range.

        Raises:
            InvalidAddressError: on malformed input or an inverted range
            ValidationError: if the same range is already banned

        """
        start, end = parse_range(from_address, to_address)
        ban = await self.ban_store.create_address_ban(start, end, reason)
        logger.info(
            "Banned address range %d-%d (id=%d): %s", start, end, ban.id, reason
        )
        await emit_security_event(
            EventType.ADDRESS_BAN_ADDED,
            "ban_registry",
            EventPriority.HIGH,
            ban_id=ban.id,
            from_address=start,
            to_address=end,
            reason=reason,
        )
        return ban

    async def update_address_ban(
        self,
        ban_id: int,
        from_address: str,
        to_address: str | None = None,
        reason: str | None = None,
    ) -> AddressBan:
        """Replace the range and reason of an existing address ban."""
        start, end = parse_range(from_address, to_address)
        ban = await self.ban_store.update_address_ban(ban_id, start, end, reason)
        logger.info("Updated address ban %d to %d-%d", ban_id, start, end)
        await emit_security_event(
            EventType.ADDRESS_BAN_UPDATED,
            "ban_registry",
            ban_id=ban_id,
            from_address=start,
            to_address=end,
            reason=reason,
        )
        return ban

    async def unban_address_range(self, ban_id: int) -> AddressBan:
        """Delete an address ban and return the removed record."""
        ban = await self.ban_store.get_address_ban(ban_id)
        if ban is None or not await self.ban_store.delete_address_ban(ban_id):
            msg = f"Address ban {ban_id} not found"
            raise BanNotFoundError(msg, {"ban_id": ban_id})
        logger.info("Removed address ban %d", ban_id)
        await emit_security_event(
            EventType.ADDRESS_BAN_REMOVED,
            "ban_registry",
            ban_id=ban_id,
            from_address=ban.from_address,
            to_address=ban.to_address,
        )
        return ban

    async def get_address_ban(self, ban_id: int) -> AddressBan | None:
        return await self.ban_store.get_address_ban(ban_id)

    async def list_address_bans(self) -> list[AddressBan]:
        return await self.ban_store.list_address_bans()

    # ------------------------------------------------------------------
    # Account bans
    # ------------------------------------------------------------------

    async def is_account_banned(self, account_id: int) -> bool:
        """Return True if the account has a qualifying ban.

        Verdicts are cached in the shared store for ``account_cache_ttl``
        seconds, never past the expiry of the ban that produced them. A
        verdict is only cached if no reconciliation ran while it was being
        computed; reconciliation bumps the account's generation key.
        """
        cache_ttl = self.config.account_cache_ttl
        cache_key = self.keys.account_ban_check(account_id)
        generation_key = self.keys.account_ban_generation(account_id)
        generation = None
        if cache_ttl > 0:
            cached = await self.kv_store.get(cache_key)
            if cached is not None:
                return cached == "1"
            generation = await self.kv_store.get(generation_key)

        now = self._clock()
        ban = await self.ban_store.find_active_account_ban(account_id, now)
        banned = ban is not None

        if cache_ttl > 0:
            ttl = cache_ttl
            if ban is not None and ban.expires_at is not None:
                ttl = min(ttl, ban.expires_at - now)
            stored = await self.kv_store.set_if_unchanged(
                cache_key, "1" if banned else "0", ttl, generation_key, generation
            )
            if not stored:
                logger.debug("Ban verdict for account %d changed; not cached", account_id)
        return banned

    async def confirm_ban_flag(self, identity: Identity) -> Identity:
        """Return ``identity`` with its ``banned`` flag confirmed.

        A clear flag is trusted. A set flag is checked against qualifying
        bans, and one left behind by a lapsed ban is lifted here instead of
        waiting for the next sweep.
        """
        if not identity.banned or await self.is_account_banned(identity.id):
            return identity
        logger.info("Account %d carries a stale ban flag", identity.id)
        banned = await self.reconcile_banned_flag(identity.id)
        return identity.model_copy(update={"banned": banned})

    async def ban_account(
        self,
        account_id: int,
        reason: str,
        issued_by: str,
        expires_at: float | None = None,
    ) -> AccountBan:
        """Ban an account until ``expires_at`` (None for a permanent ban).

        Raises:
            AccountNotFoundError: if the account does not exist
            ValidationError: on a bad reason or an expiry in the past

        """
        if await self.identity_store.find_by_id(account_id) is None:
            msg = f"Account {account_id} not found"
            raise AccountNotFoundError(msg, {"account_id": account_id})

        now = self._clock()
        if expires_at is not None and expires_at <= now:
            msg = "Ban expiry must be in the future"
            raise ValidationError(msg, {"expires_at": expires_at})

        async with self.kv_store.lock(self.keys.account_lock(account_id)):
            ban = await self.ban_store.create_account_ban(
                account_id, reason, issued_by, issued_at=now, expires_at=expires_at
            )
            await self._reconcile_locked(account_id)

        logger.warning(
            "Account %d banned by %s until %s: %s",
            account_id,
            issued_by,
            "forever" if expires_at is None else expires_at,
            reason,
        )
        await emit_security_event(
            EventType.ACCOUNT_BANNED,
            "ban_registry",
            EventPriority.HIGH,
            ban_id=ban.id,
            account_id=account_id,
            issued_by=issued_by,
            expires_at=expires_at,
        )
        return ban

    async def ban_account_for_days(
        self,
        account_id: int,
        reason: str,
        issued_by: str,
        days: int | None,
    ) -> AccountBan:
        """Ban an account for a whole number of days (None for permanent)."""
        if days is None:
            return await self.ban_account(account_id, reason, issued_by)
        if not 1 <= days <= self.config.max_ban_days:
            msg = f"Ban length must be between 1 and {self.config.max_ban_days} days"
            raise ValidationError(msg, {"days": days})
        expires_at = self._clock() + days * SECONDS_PER_DAY
        return await self.ban_account(account_id, reason, issued_by, expires_at)

    async def deactivate_ban(self, ban_id: int, actor: str) -> AccountBan:
        """Deactivate an account ban and lift the flag if none remain.

        Raises:
            BanNotFoundError: if no such ban exists
            BanAlreadyInactiveError: if the ban was already deactivated

        """
        ban = await self.ban_store.get_account_ban(ban_id)
        if ban is None:
            msg = f"Account ban {ban_id} not found"
            raise BanNotFoundError(msg, {"ban_id": ban_id})
        if not ban.active:
            msg = f"Account ban {ban_id} is already inactive"
            raise BanAlreadyInactiveError(msg, {"ban_id": ban_id})

        async with self.kv_store.lock(self.keys.account_lock(ban.account_id)):
            updated = await self.ban_store.deactivate_account_ban(
                ban_id, actor, self._clock()
            )
            await self._reconcile_locked(ban.account_id)

        logger.info("Account ban %d deactivated by %s", ban_id, actor)
        await emit_security_event(
            EventType.ACCOUNT_BAN_DEACTIVATED,
            "ban_registry",
            ban_id=ban_id,
            account_id=ban.account_id,
            actor=actor,
        )
        return updated

    async def sweep_expired(self) -> int:
        """Deactivate expired bans and reconcile the affected accounts.

        Returns:
            Number of bans deactivated; a repeated sweep returns 0

        """
        with LoggingContext("ban_sweep"):
            expired = await self.ban_store.expire_account_bans(self._clock())
            for account_id in sorted({b.account_id for b in expired}):
                await self.reconcile_banned_flag(account_id)

        if expired:
            logger.info("Expired %d account bans", len(expired))
            await emit_security_event(
                EventType.ACCOUNT_BANS_EXPIRED,
                "ban_registry",
                count=len(expired),
                ban_ids=[b.id for b in expired],
            )
        return len(expired)

    async def reconcile_banned_flag(self, account_id: int) -> bool:
        """Set the account ``banned`` flag from its qualifying bans.

        Returns:
            The reconciled flag value

        """
        async with self.kv_store.lock(self.keys.account_lock(account_id)):
            return await self._reconcile_locked(account_id)

    async def _reconcile_locked(self, account_id: int) -> bool:
        # Caller holds the account lock
        active = await self.ban_store.find_active_account_ban(account_id, self._clock())
        banned = active is not None

        identity = await self.identity_store.find_by_id(account_id)
        if identity is None:
            logger.warning("Cannot reconcile ban flag: account %d is gone", account_id)
        elif identity.banned != banned:
            await self.identity_store.set_banned(account_id, banned)
            if not banned:
                logger.info("Account %d reactivated", account_id)
                await emit_security_event(
                    EventType.ACCOUNT_REACTIVATED,
                    "ban_registry",
                    account_id=account_id,
                )

        await self.kv_store.incr(self.keys.account_ban_generation(account_id))
        await self.kv_store.delete(self.keys.account_ban_check(account_id))
        return banned

    async def get_account_ban(self, ban_id: int) -> AccountBan | None:
        return await self.ban_store.get_account_ban(ban_id)

    async def list_account_bans(
        self, account_id: int | None = None, active_only: bool = False
    ) -> list[AccountBan]:
        return await self.ban_store.list_account_bans(account_id, active_only)

    async def get_active_ban(self, account_id: int) -> AccountBan | None:
        """Return one qualifying ban for the account, if any."""
        return await self.ban_store.find_active_account_ban(account_id, self._clock())

    # ------------------------------------------------------------------
    # Sweeper
    # ------------------------------------------------------------------

    def start_sweeper(self) -> None:
        """Start the periodic expired-ban sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "Ban sweeper started (interval %.0fs)", self.config.sweep_interval
            )

    async def stop_sweeper(self) -> None:
        """Stop the periodic sweep and wait for it to finish."""
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
            logger.info("Ban sweeper stopped")

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.sweep_interval)
                await self.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Ban sweep failed")


__all__ = ["SYSTEM_ACTOR", "BanRegistry"]
