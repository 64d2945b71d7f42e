"""Tests for the HTTP tracker front end."""

from __future__ import annotations

import pytest
import pytest_asyncio
from aiohttp import test_utils

from trackgate.bencode import decode
from trackgate.models import Config
from trackgate.security.gatekeeper import Gatekeeper
from trackgate.tracker_server_http import InMemoryTrackerEngine, TrackerGate, parse_query
from trackgate.utils.exceptions import StoreUnavailableError

pytestmark = [pytest.mark.unit, pytest.mark.tracker]

INFO_HASH = b"\xaa" * 20
QUOTED_HASH = "%AA" * 20
PEER_ID = "-TG0001-" + "0" * 12
ALICE = "a" * 32


def _announce(passkey: str = ALICE) -> str:
    return f"/announce/{passkey}?info_hash={QUOTED_HASH}&peer_id={PEER_ID}&port=6881&left=0"


async def _raise_store_down(_resource_id):
    raise StoreUnavailableError("down")


async def _bdecode(resp) -> dict:
    assert resp.status == 200
    return decode(await resp.read())


def _gatekeeper(config, kv_store, ban_store, identity_store, resource_store, clock):
    return Gatekeeper(
        config, kv_store, ban_store, identity_store, resource_store, clock=clock
    )


@pytest_asyncio.fixture
async def gatekeeper(config, kv_store, ban_store, identity_store, resource_store, clock):
    return _gatekeeper(config, kv_store, ban_store, identity_store, resource_store, clock)


@pytest_asyncio.fixture
async def client(gatekeeper):
    gate = TrackerGate(gatekeeper)
    async with test_utils.TestClient(test_utils.TestServer(gate.app)) as test_client:
        yield test_client


class TestAnnounce:
    """Announce handling."""

    @pytest.mark.asyncio
    async def test_admitted_announce(self, client):
        body = await _bdecode(await client.get(_announce()))
        assert b"failure reason" not in body
        assert body[b"interval"] == 1800
        assert body[b"complete"] == 1
        assert body[b"peers"] == b""

    @pytest.mark.asyncio
    async def test_passkey_in_query(self, client):
        path = f"/announce?info_hash={QUOTED_HASH}&peer_id={PEER_ID}&port=6881&passkey={ALICE}"
        body = await _bdecode(await client.get(path))
        assert b"failure reason" not in body

    @pytest.mark.asyncio
    async def test_unknown_passkey(self, client):
        body = await _bdecode(await client.get(_announce(passkey="z" * 32)))
        assert body == {b"failure reason": b"unauthorized"}

    @pytest.mark.asyncio
    async def test_unknown_torrent(self, client):
        path = f"/announce/{ALICE}?info_hash={'%BB' * 20}&peer_id={PEER_ID}&port=6881"
        body = await _bdecode(await client.get(path))
        assert body == {b"failure reason": b"resource_not_found"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("path", "reason"),
        [
            (f"/announce/{ALICE}?info_hash=short&peer_id=x&port=1", b"invalid info_hash"),
            (f"/announce/{ALICE}?info_hash={QUOTED_HASH}&port=1", b"missing peer_id"),
            (f"/announce/{ALICE}?info_hash={QUOTED_HASH}&peer_id=x&port=0", b"invalid port"),
            (f"/announce/{ALICE}?info_hash={QUOTED_HASH}&peer_id=x&port=x", b"invalid port"),
        ],
    )
    async def test_bad_parameters(self, client, path, reason):
        body = await _bdecode(await client.get(path))
        assert body[b"failure reason"] == reason

    @pytest.mark.asyncio
    async def test_banned_loopback(self, client, gatekeeper):
        await gatekeeper.ban_address_range("127.0.0.0/8")
        body = await _bdecode(await client.get(_announce()))
        assert body == {b"failure reason": b"address_banned"}

    @pytest.mark.asyncio
    async def test_forwarded_for_ignored_without_trust(self, client, gatekeeper):
        await gatekeeper.ban_address_range("192.168.1.1", "192.168.1.255")
        resp = await client.get(_announce(), headers={"X-Forwarded-For": "192.168.1.100"})
        assert b"failure reason" not in await _bdecode(resp)

    @pytest.mark.asyncio
    async def test_store_outage_is_temporary(self, client, gatekeeper):
        gatekeeper.resource_store.exists = _raise_store_down
        body = await _bdecode(await client.get(_announce()))
        assert body == {b"failure reason": b"temporary"}


class TestProxyAndBearer:
    """Deployments behind a proxy and with bearer credentials."""

    @pytest.mark.asyncio
    async def test_forwarded_for_trusted(
        self, kv_store, ban_store, identity_store, resource_store, clock
    ):
        config = Config(
            store={"backend": "memory"},
            admission={"trust_proxy": True},
        )
        gk = _gatekeeper(config, kv_store, ban_store, identity_store, resource_store, clock)
        await gk.ban_address_range("192.168.1.1", "192.168.1.255")

        async with test_utils.TestClient(test_utils.TestServer(TrackerGate(gk).app)) as client:
            resp = await client.get(
                _announce(), headers={"X-Forwarded-For": "192.168.1.100, 10.0.0.1"}
            )
            assert (await _bdecode(resp)) == {b"failure reason": b"address_banned"}

            resp = await client.get(_announce(), headers={"X-Forwarded-For": "10.0.0.1"})
            assert b"failure reason" not in await _bdecode(resp)

    @pytest.mark.asyncio
    async def test_bearer_header(
        self, kv_store, ban_store, identity_store, resource_store, clock
    ):
        config = Config(
            store={"backend": "memory"},
            credentials={"signing_secret": "t" * 32},
            admission={"credential_mode": "bearer"},
        )
        gk = _gatekeeper(config, kv_store, ban_store, identity_store, resource_store, clock)
        token = await gk.credentials.issue(await identity_store.find_by_id(1))
        path = f"/announce?info_hash={QUOTED_HASH}&peer_id={PEER_ID}&port=6881"

        async with test_utils.TestClient(test_utils.TestServer(TrackerGate(gk).app)) as client:
            resp = await client.get(path, headers={"Authorization": f"Bearer {token}"})
            assert b"failure reason" not in await _bdecode(resp)

            # Passkeys carry no weight in bearer mode
            resp = await client.get(_announce())
            assert (await _bdecode(resp)) == {b"failure reason": b"unauthorized"}


class TestScrape:
    """Scrape handling."""

    @pytest.mark.asyncio
    async def test_scrape_known_torrent(self, client):
        await client.get(_announce())
        resp = await client.get(f"/scrape/{ALICE}?info_hash={QUOTED_HASH}")
        body = await _bdecode(resp)
        assert body[b"files"][INFO_HASH] == {
            b"complete": 1,
            b"downloaded": 0,
            b"incomplete": 0,
        }

    @pytest.mark.asyncio
    async def test_full_scrape_refused(self, client):
        body = await _bdecode(await client.get(f"/scrape/{ALICE}"))
        assert body == {b"failure reason": b"info_hash required"}

    @pytest.mark.asyncio
    async def test_one_unknown_hash_fails_the_scrape(self, client):
        path = f"/scrape/{ALICE}?info_hash={QUOTED_HASH}&info_hash={'%BB' * 20}"
        body = await _bdecode(await client.get(path))
        assert body == {b"failure reason": b"resource_not_found"}


class TestEngine:
    """In-memory swarm bookkeeping."""

    def test_peers_exclude_requester_and_split_families(self, clock):
        engine = InMemoryTrackerEngine(clock=clock)
        engine.announce(INFO_HASH, "10.0.0.1", 6881, "started", 100)
        engine.announce(INFO_HASH, "::ffff:10.0.0.2", 6882, "started", 0)
        engine.announce(INFO_HASH, "2001:db8::1", 6883, "started", 100)

        response = engine.announce(INFO_HASH, "10.0.0.9", 7000, "started", 100)
        assert response[b"peers"] == (
            bytes([10, 0, 0, 1]) + (6881).to_bytes(2, "big")
            + bytes([10, 0, 0, 2]) + (6882).to_bytes(2, "big")
        )
        assert len(response[b"peers6"]) == 18
        assert response[b"complete"] == 1
        assert response[b"incomplete"] == 3

    def test_stopped_and_timed_out_peers_leave(self, clock):
        engine = InMemoryTrackerEngine(peer_timeout=60, clock=clock)
        engine.announce(INFO_HASH, "10.0.0.1", 6881, "started", 100)
        engine.announce(INFO_HASH, "10.0.0.2", 6881, "completed", 0)
        engine.announce(INFO_HASH, "10.0.0.1", 6881, "stopped", 100)

        files = engine.scrape([INFO_HASH])[b"files"]
        assert files[INFO_HASH] == {b"complete": 1, b"downloaded": 1, b"incomplete": 0}

        clock.advance(61)
        assert engine.scrape([INFO_HASH])[b"files"][INFO_HASH][b"complete"] == 0


def test_parse_query_keeps_binary_values():
    params = parse_query("info_hash=%00%FF%2B&peer_id=a+b&flag&info_hash=x")
    assert params["info_hash"] == [b"\x00\xff+", b"x"]
    assert params["peer_id"] == [b"a b"]
    assert params["flag"] == [b""]
