"""Tests for the in-process ban store."""

from __future__ import annotations

import json
import random

import pytest

from trackgate.storage.ban_store import SYSTEM_ACTOR, MemoryBanStore
from trackgate.utils.exceptions import (
    BanAlreadyInactiveError,
    BanNotFoundError,
    StoreUnavailableError,
    ValidationError,
)

pytestmark = [pytest.mark.unit, pytest.mark.storage]

NOW = 1_700_000_000.0


class TestAddressBans:
    """Address range records and containment lookups."""

    @pytest.mark.asyncio
    async def test_containment_is_inclusive(self, ban_store):
        ban = await ban_store.create_address_ban(100, 200, "test")
        assert (await ban_store.find_address_ban_containing(100)).id == ban.id
        assert (await ban_store.find_address_ban_containing(200)).id == ban.id
        assert await ban_store.find_address_ban_containing(99) is None
        assert await ban_store.find_address_ban_containing(201) is None

    @pytest.mark.asyncio
    async def test_overlapping_and_nested_ranges(self, ban_store):
        wide = await ban_store.create_address_ban(0, 1000)
        await ban_store.create_address_ban(10, 20)
        await ban_store.create_address_ban(500, 510)
        # Only the wide range reaches 900
        assert (await ban_store.find_address_ban_containing(900)).id == wide.id
        assert await ban_store.find_address_ban_containing(1001) is None

    @pytest.mark.asyncio
    async def test_lookup_matches_linear_scan(self, ban_store):
        rng = random.Random(7)
        ranges = []
        for _ in range(60):
            start = rng.randrange(0, 10_000)
            end = start + rng.randrange(0, 300)
            if (start, end) in ranges:
                continue
            ranges.append((start, end))
            await ban_store.create_address_ban(start, end)

        for value in range(0, 10_400, 7):
            expected = any(s <= value <= e for s, e in ranges)
            found = await ban_store.find_address_ban_containing(value)
            assert (found is not None) == expected
            if found is not None:
                assert found.contains(value)

    @pytest.mark.asyncio
    async def test_duplicate_pair_rejected(self, ban_store):
        await ban_store.create_address_ban(1, 2)
        with pytest.raises(ValidationError):
            await ban_store.create_address_ban(1, 2)

    @pytest.mark.asyncio
    async def test_inverted_and_oversized_reason_rejected(self, ban_store):
        with pytest.raises(ValidationError):
            await ban_store.create_address_ban(5, 1)
        with pytest.raises(ValidationError):
            await ban_store.create_address_ban(1, 5, "x" * 256)

    @pytest.mark.asyncio
    async def test_update_and_delete(self, ban_store):
        ban = await ban_store.create_address_ban(1, 10)
        updated = await ban_store.update_address_ban(ban.id, 50, 60, "moved")
        assert (updated.from_address, updated.to_address, updated.reason) == (50, 60, "moved")
        assert await ban_store.find_address_ban_containing(5) is None
        assert await ban_store.find_address_ban_containing(55) is not None

        assert await ban_store.delete_address_ban(ban.id) is True
        assert await ban_store.delete_address_ban(ban.id) is False
        assert await ban_store.list_address_bans() == []

    @pytest.mark.asyncio
    async def test_update_missing_ban(self, ban_store):
        with pytest.raises(BanNotFoundError):
            await ban_store.update_address_ban(42, 1, 2)

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, ban_store):
        ban = await ban_store.create_address_ban(1, 10)
        ban.reason = "mutated"
        assert (await ban_store.get_address_ban(ban.id)).reason is None


class TestAccountBans:
    """Account ban records, qualifying queries and expiry."""

    @pytest.mark.asyncio
    async def test_create_and_find_active(self, ban_store):
        ban = await ban_store.create_account_ban(1, "spamming", "mod", NOW, NOW + 100)
        assert ban.active
        found = await ban_store.find_active_account_ban(1, NOW + 50)
        assert found.id == ban.id
        # Past expiry the ban no longer qualifies even before a sweep
        assert await ban_store.find_active_account_ban(1, NOW + 100) is None

    @pytest.mark.asyncio
    async def test_find_active_ignores_other_accounts_and_inactive(self, ban_store):
        ban = await ban_store.create_account_ban(1, "spamming", "mod", NOW)
        assert await ban_store.find_active_account_ban(2, NOW) is None
        await ban_store.deactivate_account_ban(ban.id, "admin", NOW + 1)
        assert await ban_store.find_active_account_ban(1, NOW + 2) is None

    @pytest.mark.asyncio
    async def test_reason_length_validated(self, ban_store):
        with pytest.raises(ValidationError):
            await ban_store.create_account_ban(1, "bad", "mod", NOW)
        with pytest.raises(ValidationError):
            await ban_store.create_account_ban(1, "x" * 501, "mod", NOW)
        with pytest.raises(ValidationError):
            await ban_store.create_account_ban(1, "     ", "mod", NOW)

    @pytest.mark.asyncio
    async def test_deactivate(self, ban_store):
        ban = await ban_store.create_account_ban(1, "spamming", "mod", NOW)
        updated = await ban_store.deactivate_account_ban(ban.id, "admin", NOW + 1)
        assert not updated.active
        assert updated.deactivated_by == "admin"
        assert updated.deactivated_at == NOW + 1

        with pytest.raises(BanAlreadyInactiveError):
            await ban_store.deactivate_account_ban(ban.id, "admin", NOW + 2)
        with pytest.raises(BanNotFoundError):
            await ban_store.deactivate_account_ban(999, "admin", NOW + 2)

    @pytest.mark.asyncio
    async def test_expire_account_bans(self, ban_store):
        short = await ban_store.create_account_ban(1, "short ban", "mod", NOW, NOW + 10)
        await ban_store.create_account_ban(1, "long ban", "mod", NOW, NOW + 1000)
        await ban_store.create_account_ban(2, "permanent", "mod", NOW)

        expired = await ban_store.expire_account_bans(NOW + 10)
        assert [b.id for b in expired] == [short.id]
        assert expired[0].deactivated_by == SYSTEM_ACTOR
        assert await ban_store.expire_account_bans(NOW + 10) == []

    @pytest.mark.asyncio
    async def test_list_filters(self, ban_store):
        a = await ban_store.create_account_ban(1, "first ban", "mod", NOW)
        await ban_store.create_account_ban(2, "other account", "mod", NOW)
        await ban_store.deactivate_account_ban(a.id, "mod", NOW)
        await ban_store.create_account_ban(1, "second ban", "mod", NOW)

        assert len(await ban_store.list_account_bans()) == 3
        assert len(await ban_store.list_account_bans(account_id=1)) == 2
        active = await ban_store.list_account_bans(account_id=1, active_only=True)
        assert [b.reason for b in active] == ["second ban"]


class TestPersistence:
    """JSON snapshot round trips."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        path = tmp_path / "bans.json"
        store = MemoryBanStore(path)
        await store.create_address_ban(1 << 100, (1 << 100) + 5, "v6 block")
        await store.create_account_ban(1, "spamming", "mod", NOW, NOW + 60)

        data = json.loads(path.read_text())
        assert data["version"] == 1
        assert not path.with_suffix(".tmp").exists()

        reloaded = MemoryBanStore(path)
        await reloaded.load()
        assert (await reloaded.find_address_ban_containing((1 << 100) + 3)).reason == "v6 block"
        assert len(await reloaded.list_account_bans(account_id=1)) == 1

        # Ids keep increasing after a reload
        ban = await reloaded.create_address_ban(7, 8)
        assert ban.id == 2

    @pytest.mark.asyncio
    async def test_load_missing_file_is_empty(self, tmp_path):
        store = MemoryBanStore(tmp_path / "absent.json")
        await store.load()
        assert await store.list_address_bans() == []

    @pytest.mark.asyncio
    async def test_load_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "bans.json"
        path.write_text("{not json")
        with pytest.raises(StoreUnavailableError):
            await MemoryBanStore(path).load()
