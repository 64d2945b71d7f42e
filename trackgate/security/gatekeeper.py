"""Gatekeeper for trackgate.

Single entry point for callers: tracker admission, API login and logout,
and ban administration. Wires the ban registry, lockout guard, credential
service and admission pipeline to one set of stores.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from trackgate.models import AccountBan, AddressBan, Config
from trackgate.security.admission import (
    AdmissionRequest,
    Decision,
    DenyReason,
    build_tracker_pipeline,
)
from trackgate.security.ban_registry import BanRegistry
from trackgate.security.credentials import CredentialService
from trackgate.security.lockout import LockoutGuard
from trackgate.security.passwords import Argon2PasswordVerifier, PasswordVerifier
from trackgate.storage.ban_store import BanStore, MemoryBanStore
from trackgate.storage.identity import (
    IdentityStore,
    MemoryIdentityStore,
    MemoryResourceStore,
    ResourceStore,
    normalize_handle,
)
from trackgate.storage.keys import StoreKeys
from trackgate.storage.kv_store import KeyValueStore, create_store
from trackgate.utils.events import EventPriority, EventType, emit_security_event
from trackgate.utils.exceptions import (
    ConfigurationError,
    MalformedCredentialError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)


class Gatekeeper:
    """Admission, authentication and ban administration facade."""

    def __init__(
        self,
        config: Config,
        kv_store: KeyValueStore,
        ban_store: BanStore,
        identity_store: IdentityStore,
        resource_store: ResourceStore,
        password_verifier: PasswordVerifier | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize gatekeeper.

        The credential service is only built when a signing secret is
        configured; without one, ``authenticate`` and ``logout`` raise
        ``ConfigurationError`` and tracker admission uses passkeys.
        """
        self.config = config
        self.kv_store = kv_store
        self.ban_store = ban_store
        self.identity_store = identity_store
        self.resource_store = resource_store
        self.password_verifier = password_verifier or Argon2PasswordVerifier()

        keys = StoreKeys(config.store.key_prefix)
        self.bans = BanRegistry(
            ban_store,
            identity_store,
            kv_store,
            config=config.bans,
            keys=keys,
            clock=clock,
            fail_open_on_malformed_address=config.admission.fail_open_on_malformed_address,
        )
        self.lockout = LockoutGuard(kv_store, config=config.lockout, keys=keys)
        self.credentials: CredentialService | None = None
        if config.credentials.signing_secret:
            self.credentials = CredentialService(
                identity_store,
                kv_store,
                config.credentials,
                keys=keys,
                clock=clock,
                ban_registry=self.bans,
            )
        self.pipeline = build_tracker_pipeline(
            self.bans,
            identity_store,
            resource_store,
            credential_mode=config.admission.credential_mode,
            credentials=self.credentials,
        )

        self.stats: dict[str, Any] = {
            "admitted": 0,
            "denied": 0,
            "denied_by_reason": {},
            "logins": 0,
            "failed_logins": 0,
        }

    @classmethod
    def from_config(
        cls, config: Config, clock: Callable[[], float] = time.time
    ) -> Gatekeeper:
        """Build a gatekeeper with the stores selected by ``config.store``."""
        return cls(
            config,
            kv_store=create_store(config.store, clock=clock),
            ban_store=MemoryBanStore(config.store.ban_store_path),
            identity_store=MemoryIdentityStore(config.store.identity_store_path),
            resource_store=MemoryResourceStore(),
            clock=clock,
        )

    async def start(self) -> None:
        """Load persisted records and start the ban sweeper."""
        for store in (self.ban_store, self.identity_store):
            load = getattr(store, "load", None)
            if load is not None:
                await load()
        self.bans.start_sweeper()
        logger.info("Gatekeeper started")

    async def stop(self) -> None:
        """Stop the ban sweeper and release the shared store."""
        await self.bans.stop_sweeper()
        await self.kv_store.close()
        logger.info("Gatekeeper stopped")

    def _require_credentials(self) -> CredentialService:
        if self.credentials is None:
            msg = "credentials.signing_secret is required for bearer credentials"
            raise ConfigurationError(msg)
        return self.credentials

    def _count_denial(self, reason: DenyReason) -> None:
        self.stats["denied"] += 1
        by_reason = self.stats["denied_by_reason"]
        by_reason[reason.value] = by_reason.get(reason.value, 0) + 1

    # ------------------------------------------------------------------
    # Tracker admission
    # ------------------------------------------------------------------

    async def check_admission(
        self,
        resource_id: str | None,
        address: str,
        credential: str | None,
    ) -> Decision:
        """Run the tracker pipeline for one protocol request."""
        decision = await self.pipeline.evaluate(
            AdmissionRequest(address=address, resource_id=resource_id, credential=credential)
        )
        if decision.allowed:
            self.stats["admitted"] += 1
            return decision

        self._count_denial(decision.reason)
        logger.warning(
            "Denied %s for resource %s: %s", address, resource_id, decision.reason.value
        )
        await emit_security_event(
            EventType.ADMISSION_DENIED,
            "gatekeeper",
            address=address,
            resource_id=resource_id,
            reason=decision.reason.value,
        )
        return decision

    # ------------------------------------------------------------------
    # API authentication
    # ------------------------------------------------------------------

    async def authenticate(self, handle: str, secret: str, address: str) -> Decision:
        """Log in with handle and password from ``address``.

        A password is always verified, even for unknown handles, so the
        response time does not reveal which handles exist.
        """
        credentials = self._require_credentials()
        handle = normalize_handle(handle)
        try:
            if await self.lockout.is_locked(address):
                retry_after = await self.lockout.remaining_seconds(address)
                logger.warning("Login from locked out address %s", address)
                self._count_denial(DenyReason.LOCKED_OUT)
                return Decision.deny(DenyReason.LOCKED_OUT, retry_after=retry_after)

            identity = await self.identity_store.find_by_credentials(handle)
            matched = await self.password_verifier.verify(
                identity.password_hash if identity else None, secret
            )
            if identity is None or not matched:
                await self._login_failed(address, handle)
                return Decision.deny(DenyReason.INVALID_CREDENTIALS)

            identity = await self.bans.confirm_ban_flag(identity)
            if identity.banned:
                await self._login_failed(address, handle)
                return Decision.deny(DenyReason.ACCOUNT_SUSPENDED)

            await self.lockout.clear(address)
            token = await credentials.issue(identity)
        except StoreUnavailableError as e:
            logger.warning("Login for %s refused, store unavailable: %s", handle, e)
            self._count_denial(DenyReason.TEMPORARY)
            return Decision.deny(DenyReason.TEMPORARY)

        self.stats["logins"] += 1
        logger.info("Account %d logged in from %s", identity.id, address)
        await emit_security_event(
            EventType.LOGIN_SUCCEEDED,
            "gatekeeper",
            account_id=identity.id,
            address=address,
        )
        return Decision.allow(identity=identity, token=token)

    async def _login_failed(self, address: str, handle: str) -> None:
        self.stats["failed_logins"] += 1
        attempts = await self.lockout.record_failure(address)
        logger.warning("Failed login for %r from %s (attempt %d)", handle, address, attempts)
        priority = EventPriority.NORMAL
        if attempts >= self.config.lockout.max_attempts:
            priority = EventPriority.HIGH
        await emit_security_event(
            EventType.LOGIN_FAILED,
            "gatekeeper",
            priority,
            handle=handle,
            address=address,
            attempts=attempts,
        )

    async def logout(self, token: str) -> Decision:
        """Revoke the presented credential."""
        credentials = self._require_credentials()
        try:
            await credentials.revoke(token)
        except MalformedCredentialError:
            return Decision.deny(DenyReason.UNAUTHORIZED)
        except StoreUnavailableError as e:
            logger.warning("Logout refused, store unavailable: %s", e)
            return Decision.deny(DenyReason.TEMPORARY)
        return Decision.allow()

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def ban_account(
        self,
        account_id: int,
        reason: str,
        issued_by: str,
        expires_at: float | None = None,
    ) -> AccountBan:
        return await self.bans.ban_account(account_id, reason, issued_by, expires_at)

    async def unban_account(self, ban_id: int, actor: str) -> AccountBan:
        return await self.bans.deactivate_ban(ban_id, actor)

    async def ban_address_range(
        self,
        from_address: str,
        to_address: str | None = None,
        reason: str | None = None,
    ) -> AddressBan:
        return await self.bans.ban_address_range(from_address, to_address, reason)

    async def unban_address_range(self, ban_id: int) -> AddressBan:
        return await self.bans.unban_address_range(ban_id)
