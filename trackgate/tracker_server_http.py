"""HTTP tracker front end (BEP 3 style) gated by trackgate.

Provides ``/announce`` and ``/scrape`` with compact peer lists. Every
request passes through ``Gatekeeper.check_admission`` before it reaches the
tracker engine; refused requests get a bencoded ``failure reason`` carrying
the stable denial code.
"""

from __future__ import annotations

import ipaddress
import logging
import time
from typing import Any, Callable, Protocol
from urllib.parse import unquote, unquote_to_bytes

from aiohttp import web

from trackgate.bencode import encode
from trackgate.models import CredentialMode, TrackerConfig
from trackgate.security.admission import DenyReason
from trackgate.security.gatekeeper import Gatekeeper
from trackgate.utils.logging_config import log_exception, set_correlation_id

logger = logging.getLogger(__name__)

INFO_HASH_LENGTH = 20
CONTENT_TYPE = "text/plain"


class TrackerRequestError(ValueError):
    """Announce or scrape parameters are unusable."""


class TrackerEngine(Protocol):
    """Protocol engine that serves admitted requests."""

    def announce(
        self, info_hash: bytes, ip: str, port: int, event: str, left: int | None
    ) -> dict[bytes, Any]: ...

    def scrape(self, info_hashes: list[bytes]) -> dict[bytes, Any]: ...


class InMemoryTrackerEngine:
    """Swarm state kept in process memory."""

    def __init__(
        self,
        interval: int = 1800,
        peer_timeout: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        # info_hash -> {(ip, port) -> (last_seen, is_seeder)}
        self.torrents: dict[bytes, dict[tuple[str, int], tuple[float, bool]]] = {}
        self.downloaded: dict[bytes, int] = {}
        self.interval = interval
        self.peer_timeout = peer_timeout
        self._clock = clock

    def _prune(self, peers: dict[tuple[str, int], tuple[float, bool]], now: float) -> None:
        cutoff = now - self.peer_timeout
        for key in [k for k, (seen, _) in peers.items() if seen < cutoff]:
            peers.pop(key, None)

    def announce(
        self, info_hash: bytes, ip: str, port: int, event: str, left: int | None
    ) -> dict[bytes, Any]:
        now = self._clock()
        peers = self.torrents.setdefault(info_hash, {})
        key = (ip, port)
        if event == "stopped":
            peers.pop(key, None)
        else:
            peers[key] = (now, left == 0)
            if event == "completed":
                self.downloaded[info_hash] = self.downloaded.get(info_hash, 0) + 1
        self._prune(peers, now)

        compact = bytearray()
        compact6 = bytearray()
        for peer_ip, peer_port in peers:
            if (peer_ip, peer_port) == key:
                continue
            try:
                addr = ipaddress.ip_address(peer_ip)
            except ValueError:
                continue
            if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is None:
                compact6.extend(addr.packed + peer_port.to_bytes(2, "big"))
            else:
                v4 = addr.ipv4_mapped if isinstance(addr, ipaddress.IPv6Address) else addr
                compact.extend(v4.packed + peer_port.to_bytes(2, "big"))

        seeders = sum(1 for _, seeder in peers.values() if seeder)
        response: dict[bytes, Any] = {
            b"interval": self.interval,
            b"complete": seeders,
            b"incomplete": len(peers) - seeders,
            b"peers": bytes(compact),
        }
        if compact6:
            response[b"peers6"] = bytes(compact6)
        return response

    def scrape(self, info_hashes: list[bytes]) -> dict[bytes, Any]:
        now = self._clock()
        files: dict[bytes, Any] = {}
        for info_hash in info_hashes:
            peers = self.torrents.get(info_hash, {})
            self._prune(peers, now)
            seeders = sum(1 for _, seeder in peers.values() if seeder)
            files[info_hash] = {
                b"complete": seeders,
                b"downloaded": self.downloaded.get(info_hash, 0),
                b"incomplete": len(peers) - seeders,
            }
        return {b"files": files}


def parse_query(raw_query: str) -> dict[str, list[bytes]]:
    """Split a query string keeping values as raw percent-decoded bytes.

    ``info_hash`` and ``peer_id`` are binary, so the usual text decoding
    would corrupt them.
    """
    params: dict[str, list[bytes]] = {}
    for pair in raw_query.split("&"):
        if not pair:
            continue
        name, _, value = pair.partition("=")
        params.setdefault(unquote(name.replace("+", " ")), []).append(
            unquote_to_bytes(value.replace("+", " "))
        )
    return params


def _first(params: dict[str, list[bytes]], name: str) -> bytes | None:
    values = params.get(name)
    return values[0] if values else None


def _int_param(params: dict[str, list[bytes]], name: str, default: int | None = None) -> int | None:
    raw = _first(params, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        msg = f"invalid {name}"
        raise TrackerRequestError(msg) from None


def _info_hash(raw: bytes | None) -> bytes:
    if raw is None or len(raw) != INFO_HASH_LENGTH:
        msg = "invalid info_hash"
        raise TrackerRequestError(msg)
    return raw


def _bencoded(payload: dict[bytes, Any]) -> web.Response:
    return web.Response(body=encode(payload), content_type=CONTENT_TYPE)


def failure(reason: str) -> web.Response:
    """BEP 3 failure: always HTTP 200 with a bencoded reason."""
    return _bencoded({b"failure reason": reason.encode("utf-8")})


class TrackerGate:
    """aiohttp application wiring the gatekeeper in front of a tracker engine."""

    def __init__(
        self,
        gatekeeper: Gatekeeper,
        engine: TrackerEngine | None = None,
        config: TrackerConfig | None = None,
    ):
        self.gatekeeper = gatekeeper
        self.config = config or gatekeeper.config.tracker
        self.engine = engine or InMemoryTrackerEngine(
            interval=self.config.announce_interval,
            peer_timeout=self.config.peer_timeout,
        )
        self.trust_proxy = gatekeeper.config.admission.trust_proxy
        self.bearer_mode = (
            gatekeeper.config.admission.credential_mode == CredentialMode.BEARER
        )

        self.app = web.Application(middlewares=[self._error_middleware])
        self.app.router.add_get("/announce", self.handle_announce)
        self.app.router.add_get("/announce/{passkey}", self.handle_announce)
        self.app.router.add_get("/scrape", self.handle_scrape)
        self.app.router.add_get("/scrape/{passkey}", self.handle_scrape)
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        set_correlation_id()
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except TrackerRequestError as e:
            return failure(str(e))
        except Exception as e:
            log_exception(logger, e, f"Tracker request {request.path} failed")
            return failure(DenyReason.TEMPORARY.value)

    def client_address(self, request: web.Request) -> str:
        """Address the request came from, honoring X-Forwarded-For if trusted."""
        if self.trust_proxy:
            forwarded = request.headers.get("X-Forwarded-For", "")
            first_hop = forwarded.split(",", 1)[0].strip()
            if first_hop:
                return first_hop
        return request.remote or ""

    def credential(self, request: web.Request, params: dict[str, list[bytes]]) -> str | None:
        """Bearer token or passkey presented with the request."""
        if self.bearer_mode:
            header = request.headers.get("Authorization", "")
            scheme, _, token = header.partition(" ")
            if scheme.lower() == "bearer" and token.strip():
                return token.strip()
            return None
        passkey = request.match_info.get("passkey")
        if passkey:
            return passkey
        raw = _first(params, "passkey")
        return raw.decode("utf-8", "replace") if raw else None

    async def handle_announce(self, request: web.Request) -> web.Response:
        params = parse_query(request.rel_url.raw_query_string)
        info_hash = _info_hash(_first(params, "info_hash"))
        if _first(params, "peer_id") is None:
            msg = "missing peer_id"
            raise TrackerRequestError(msg)
        port = _int_param(params, "port")
        if port is None or not 1 <= port <= 65535:
            msg = "invalid port"
            raise TrackerRequestError(msg)
        left = _int_param(params, "left")
        event = (_first(params, "event") or b"").decode("ascii", "replace")

        address = self.client_address(request)
        decision = await self.gatekeeper.check_admission(
            info_hash.hex(), address, self.credential(request, params)
        )
        if not decision.allowed:
            return failure(decision.reason.value)

        return _bencoded(self.engine.announce(info_hash, address, port, event, left))

    async def handle_scrape(self, request: web.Request) -> web.Response:
        params = parse_query(request.rel_url.raw_query_string)
        raw_hashes = params.get("info_hash", [])
        if not raw_hashes:
            # Full scrape would list every torrent, which a private tracker hides
            msg = "info_hash required"
            raise TrackerRequestError(msg)
        info_hashes = [_info_hash(raw) for raw in raw_hashes]

        address = self.client_address(request)
        credential = self.credential(request, params)
        for info_hash in info_hashes:
            decision = await self.gatekeeper.check_admission(
                info_hash.hex(), address, credential
            )
            if not decision.allowed:
                return failure(decision.reason.value)

        return _bencoded(self.engine.scrape(info_hashes))

    async def start(self) -> None:
        """Start listening on the configured host and port."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.config.host, self.config.port)
        await self.site.start()
        logger.info("Tracker gate listening on %s:%d", self.config.host, self.config.port)

    async def stop(self) -> None:
        """Stop listening."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Tracker gate stopped")
