"""Identity and resource collaborators.

Account and torrent persistence belong to the surrounding application; the
admission core only needs the narrow lookups declared here.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Protocol

from trackgate.models import Identity
from trackgate.storage.persistence import read_snapshot, write_snapshot
from trackgate.utils.exceptions import AccountNotFoundError

logger = logging.getLogger(__name__)


def normalize_handle(handle: str) -> str:
    """Return the canonical form of a login handle."""
    return handle.strip().lower()


class IdentityStore(Protocol):
    """Account lookups used by the admission core."""

    async def find_by_id(self, account_id: int) -> Identity | None: ...

    async def find_by_credentials(self, handle: str) -> Identity | None: ...

    async def find_by_passkey(self, passkey: str) -> Identity | None: ...

    async def set_banned(self, account_id: int, banned: bool) -> None: ...


class ResourceStore(Protocol):
    """Existence check for tracked resources."""

    async def exists(self, resource_id: str) -> bool: ...


class MemoryIdentityStore:
    """In-process identity store with optional JSON snapshot."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path).expanduser() if path else None
        self._identities: dict[int, Identity] = {}

    async def load(self) -> None:
        """Replace in-memory accounts with the snapshot at ``path``."""
        if self.path is None:
            return
        data = await read_snapshot(self.path)
        self._identities = {}
        for item in data.get("identities", []):
            identity = Identity(**item)
            self._identities[identity.id] = identity
        logger.info("Loaded %d identities from %s", len(self._identities), self.path)

    async def save(self) -> None:
        """Write all accounts to ``path`` (no-op without a path)."""
        if self.path is None:
            return
        await write_snapshot(
            self.path,
            {"identities": [i.model_dump(mode="json") for i in self._identities.values()]},
        )

    async def upsert(self, identity: Identity) -> Identity:
        """Insert or replace an account. Handles are stored normalized."""
        stored = identity.model_copy(update={"handle": normalize_handle(identity.handle)})
        self._identities[stored.id] = stored
        await self.save()
        return stored.model_copy()

    async def list_identities(self) -> list[Identity]:
        return [i.model_copy() for _, i in sorted(self._identities.items())]

    async def find_by_id(self, account_id: int) -> Identity | None:
        identity = self._identities.get(account_id)
        return identity.model_copy() if identity else None

    async def find_by_credentials(self, handle: str) -> Identity | None:
        wanted = normalize_handle(handle)
        for identity in self._identities.values():
            if identity.handle == wanted:
                return identity.model_copy()
        return None

    async def find_by_passkey(self, passkey: str) -> Identity | None:
        if not passkey:
            return None
        for identity in self._identities.values():
            if identity.passkey == passkey:
                return identity.model_copy()
        return None

    async def set_banned(self, account_id: int, banned: bool) -> None:
        identity = self._identities.get(account_id)
        if identity is None:
            msg = f"Account {account_id} not found"
            raise AccountNotFoundError(msg, {"account_id": account_id})
        if identity.banned != banned:
            self._identities[account_id] = identity.model_copy(update={"banned": banned})
            await self.save()


class MemoryResourceStore:
    """Set of known info hashes (hex, case-insensitive)."""

    def __init__(self, resources: Iterable[str] = ()):
        self._resources = {r.lower() for r in resources}

    def add(self, resource_id: str) -> None:
        self._resources.add(resource_id.lower())

    def remove(self, resource_id: str) -> None:
        self._resources.discard(resource_id.lower())

    async def exists(self, resource_id: str) -> bool:
        return resource_id.lower() in self._resources
