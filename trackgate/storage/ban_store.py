"""Persistent ban records.

``BanStore`` is the contract the ban registry relies on; ``MemoryBanStore``
is an in-process implementation that can snapshot itself to a JSON file.
Records handed out are copies, so callers can never mutate stored state.
"""

from __future__ import annotations

import bisect
import logging
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError as PydanticValidationError

from trackgate.models import AccountBan, AddressBan
from trackgate.storage.persistence import read_snapshot, write_snapshot
from trackgate.utils.exceptions import (
    BanAlreadyInactiveError,
    BanNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class BanStore(Protocol):
    """Storage contract for address and account bans."""

    async def list_address_bans(self) -> list[AddressBan]: ...

    async def get_address_ban(self, ban_id: int) -> AddressBan | None: ...

    async def find_address_ban_containing(self, value: int) -> AddressBan | None: ...

    async def create_address_ban(
        self, from_address: int, to_address: int, reason: str | None = None
    ) -> AddressBan: ...

    async def update_address_ban(
        self,
        ban_id: int,
        from_address: int,
        to_address: int,
        reason: str | None = None,
    ) -> AddressBan: ...

    async def delete_address_ban(self, ban_id: int) -> bool: ...

    async def get_account_ban(self, ban_id: int) -> AccountBan | None: ...

    async def create_account_ban(
        self,
        account_id: int,
        reason: str,
        issued_by: str,
        issued_at: float,
        expires_at: float | None = None,
    ) -> AccountBan: ...

    async def list_account_bans(
        self, account_id: int | None = None, active_only: bool = False
    ) -> list[AccountBan]: ...

    async def find_active_account_ban(
        self, account_id: int, now: float
    ) -> AccountBan | None: ...

    async def deactivate_account_ban(
        self, ban_id: int, actor: str, at: float
    ) -> AccountBan: ...

    async def expire_account_bans(self, now: float) -> list[AccountBan]: ...


def _validated(model_cls, **fields):
    try:
        return model_cls(**fields)
    except PydanticValidationError as e:
        first = e.errors()[0]
        msg = f"Invalid {model_cls.__name__}: {first.get('msg', e)}"
        raise ValidationError(msg, {"fields": fields}) from e


class MemoryBanStore:
    """In-process ban store with an interval index for address lookups.

    Address bans are kept sorted by ``from_address`` together with a running
    maximum of ``to_address``. A containment query bisects the starts to
    bound the candidate prefix and then bisects the running maximum to find
    the first candidate that reaches the address, so overlapping ranges are
    answered in O(log n).
    """

    def __init__(self, path: str | Path | None = None):
        """Initialize ban store.

        Args:
            path: JSON snapshot file; None keeps records in memory only

        """
        self.path = Path(path).expanduser() if path else None
        self._address_bans: dict[int, AddressBan] = {}
        self._account_bans: dict[int, AccountBan] = {}
        self._next_address_id = 1
        self._next_account_id = 1

        # Interval index
        self._ordered: list[AddressBan] = []
        self._starts: list[int] = []
        self._reach: list[int] = []

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Replace in-memory records with the snapshot at ``path``."""
        if self.path is None:
            return
        data = await read_snapshot(self.path)
        self._address_bans = {}
        self._account_bans = {}
        for item in data.get("address_bans", []):
            ban = AddressBan(**item)
            self._address_bans[ban.id] = ban
        for item in data.get("account_bans", []):
            ban = AccountBan(**item)
            self._account_bans[ban.id] = ban
        self._next_address_id = max(self._address_bans, default=0) + 1
        self._next_account_id = max(self._account_bans, default=0) + 1
        self._reindex()
        logger.info(
            "Loaded %d address bans and %d account bans from %s",
            len(self._address_bans),
            len(self._account_bans),
            self.path,
        )

    async def save(self) -> None:
        """Write all records to ``path`` (no-op without a path)."""
        if self.path is None:
            return
        await write_snapshot(
            self.path,
            {
                "address_bans": [
                    b.model_dump(mode="json") for b in self._address_bans.values()
                ],
                "account_bans": [
                    b.model_dump(mode="json") for b in self._account_bans.values()
                ],
            },
        )

    # ------------------------------------------------------------------
    # Address bans
    # ------------------------------------------------------------------

    def _reindex(self) -> None:
        self._ordered = sorted(
            self._address_bans.values(),
            key=lambda b: (b.from_address, b.to_address, b.id),
        )
        self._starts = [b.from_address for b in self._ordered]
        self._reach = []
        reach = -1
        for ban in self._ordered:
            reach = max(reach, ban.to_address)
            self._reach.append(reach)

    def _check_unique_pair(
        self, from_address: int, to_address: int, ban_id: int | None = None
    ) -> None:
        for ban in self._address_bans.values():
            if ban.id == ban_id:
                continue
            if ban.from_address == from_address and ban.to_address == to_address:
                msg = "An address ban with this range already exists"
                raise ValidationError(
                    msg, {"existing_id": ban.id, "from": from_address, "to": to_address}
                )

    async def list_address_bans(self) -> list[AddressBan]:
        return [b.model_copy() for b in self._ordered]

    async def get_address_ban(self, ban_id: int) -> AddressBan | None:
        ban = self._address_bans.get(ban_id)
        return ban.model_copy() if ban else None

    async def find_address_ban_containing(self, value: int) -> AddressBan | None:
        """Return a ban whose inclusive range contains ``value``, if any."""
        last = bisect.bisect_right(self._starts, value) - 1
        if last < 0 or self._reach[last] < value:
            return None
        # First position whose running maximum reaches value; the ban there
        # is the one that raised the maximum, so its end is >= value.
        first = bisect.bisect_left(self._reach, value, 0, last + 1)
        return self._ordered[first].model_copy()

    async def create_address_ban(
        self, from_address: int, to_address: int, reason: str | None = None
    ) -> AddressBan:
        self._check_unique_pair(from_address, to_address)
        ban = _validated(
            AddressBan,
            id=self._next_address_id,
            from_address=from_address,
            to_address=to_address,
            reason=reason,
        )
        self._address_bans[ban.id] = ban
        self._next_address_id += 1
        self._reindex()
        await self.save()
        return ban.model_copy()

    async def update_address_ban(
        self,
        ban_id: int,
        from_address: int,
        to_address: int,
        reason: str | None = None,
    ) -> AddressBan:
        if ban_id not in self._address_bans:
            msg = f"Address ban {ban_id} not found"
            raise BanNotFoundError(msg, {"ban_id": ban_id})
        self._check_unique_pair(from_address, to_address, ban_id=ban_id)
        ban = _validated(
            AddressBan,
            id=ban_id,
            from_address=from_address,
            to_address=to_address,
            reason=reason,
        )
        self._address_bans[ban_id] = ban
        self._reindex()
        await self.save()
        return ban.model_copy()

    async def delete_address_ban(self, ban_id: int) -> bool:
        if self._address_bans.pop(ban_id, None) is None:
            return False
        self._reindex()
        await self.save()
        return True

    # ------------------------------------------------------------------
    # Account bans
    # ------------------------------------------------------------------

    async def get_account_ban(self, ban_id: int) -> AccountBan | None:
        ban = self._account_bans.get(ban_id)
        return ban.model_copy() if ban else None

    async def create_account_ban(
        self,
        account_id: int,
        reason: str,
        issued_by: str,
        issued_at: float,
        expires_at: float | None = None,
    ) -> AccountBan:
        ban = _validated(
            AccountBan,
            id=self._next_account_id,
            account_id=account_id,
            reason=reason,
            issued_by=issued_by,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        self._account_bans[ban.id] = ban
        self._next_account_id += 1
        await self.save()
        return ban.model_copy()

    async def list_account_bans(
        self, account_id: int | None = None, active_only: bool = False
    ) -> list[AccountBan]:
        bans = sorted(self._account_bans.values(), key=lambda b: b.id)
        return [
            b.model_copy()
            for b in bans
            if (account_id is None or b.account_id == account_id)
            and (not active_only or b.active)
        ]

    async def find_active_account_ban(
        self, account_id: int, now: float
    ) -> AccountBan | None:
        """Return a qualifying ban for ``account_id``, if any."""
        for ban in self._account_bans.values():
            if ban.account_id != account_id:
                continue
            if ban.is_qualifying(now):
                return ban.model_copy()
        return None

    async def deactivate_account_ban(
        self, ban_id: int, actor: str, at: float
    ) -> AccountBan:
        ban = self._account_bans.get(ban_id)
        if ban is None:
            msg = f"Account ban {ban_id} not found"
            raise BanNotFoundError(msg, {"ban_id": ban_id})
        if not ban.active:
            msg = f"Account ban {ban_id} is already inactive"
            raise BanAlreadyInactiveError(msg, {"ban_id": ban_id})

        updated = ban.model_copy(
            update={"active": False, "deactivated_by": actor, "deactivated_at": at}
        )
        self._account_bans[ban_id] = updated
        await self.save()
        return updated.model_copy()

    async def expire_account_bans(self, now: float) -> list[AccountBan]:
        """Deactivate every active ban with ``expires_at <= now``.

        Returns:
            The bans deactivated by this call

        """
        expired: list[AccountBan] = []
        for ban_id, ban in self._account_bans.items():
            if ban.active and ban.expires_at is not None and ban.expires_at <= now:
                updated = ban.model_copy(
                    update={
                        "active": False,
                        "deactivated_by": SYSTEM_ACTOR,
                        "deactivated_at": now,
                    }
                )
                self._account_bans[ban_id] = updated
                expired.append(updated.model_copy())
        if expired:
            await self.save()
        return expired
