"""Tests for the identity and resource stores."""

from __future__ import annotations

import pytest

from trackgate.models import Identity
from trackgate.storage.identity import MemoryIdentityStore, MemoryResourceStore
from trackgate.utils.exceptions import AccountNotFoundError

pytestmark = [pytest.mark.unit, pytest.mark.storage]


@pytest.mark.asyncio
async def test_lookups(identity_store):
    assert (await identity_store.find_by_id(1)).handle == "alice"
    assert await identity_store.find_by_id(99) is None
    assert (await identity_store.find_by_credentials("  ALICE ")).id == 1
    assert (await identity_store.find_by_passkey("b" * 32)).id == 2
    assert await identity_store.find_by_passkey("") is None
    assert await identity_store.find_by_passkey("c" * 32) is None


@pytest.mark.asyncio
async def test_set_banned(identity_store):
    await identity_store.set_banned(1, True)
    assert (await identity_store.find_by_id(1)).banned is True
    await identity_store.set_banned(1, False)
    assert (await identity_store.find_by_id(1)).banned is False

    with pytest.raises(AccountNotFoundError):
        await identity_store.set_banned(99, True)


@pytest.mark.asyncio
async def test_password_hash_not_in_repr(identity_store):
    identity = await identity_store.find_by_id(1)
    assert "argon2" not in repr(identity)


@pytest.mark.asyncio
async def test_persistence_round_trip(tmp_path):
    path = tmp_path / "identities.json"
    store = MemoryIdentityStore(path)
    await store.upsert(Identity(id=7, handle="Bob", passkey="p" * 32))
    await store.set_banned(7, True)

    reloaded = MemoryIdentityStore(path)
    await reloaded.load()
    bob = await reloaded.find_by_id(7)
    assert bob.handle == "bob"
    assert bob.banned is True
    assert [i.id for i in await reloaded.list_identities()] == [7]


@pytest.mark.asyncio
async def test_resource_store_is_case_insensitive():
    store = MemoryResourceStore(["AB" * 20])
    assert await store.exists("ab" * 20)
    store.remove("ab" * 20)
    assert not await store.exists("AB" * 20)
    store.add("CD" * 20)
    assert await store.exists("cd" * 20)
