"""Admission pipeline for tracker requests.

A pipeline is an ordered fold over checks. Each check looks at the request
and either allows it (optionally attaching the identity it resolved) or
denies it with a stable reason. The first denial wins and later checks are
never consulted. Any exception escaping a check is turned into a
``TEMPORARY`` denial at the pipeline boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

from trackgate.models import CredentialMode, Identity
from trackgate.utils.exceptions import (
    BannedError,
    ConfigurationError,
    CredentialError,
    StoreUnavailableError,
)
from trackgate.utils.logging_config import log_exception

if TYPE_CHECKING:  # pragma: no cover
    from trackgate.security.ban_registry import BanRegistry
    from trackgate.security.credentials import CredentialService
    from trackgate.storage.identity import IdentityStore, ResourceStore

logger = logging.getLogger(__name__)


class DenyReason(str, Enum):
    """Stable codes returned to callers when a request is refused."""

    ADDRESS_BANNED = "address_banned"
    UNAUTHORIZED = "unauthorized"
    RESOURCE_NOT_FOUND = "resource_not_found"
    LOCKED_OUT = "locked_out"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_SUSPENDED = "account_suspended"
    TEMPORARY = "temporary"


@dataclass(frozen=True)
class Decision:
    """Outcome of an admission or authentication step."""

    allowed: bool
    reason: DenyReason | None = None
    identity: Identity | None = None
    token: str | None = None
    retry_after: float | None = None

    @classmethod
    def allow(cls, identity: Identity | None = None, token: str | None = None) -> Decision:
        return cls(allowed=True, identity=identity, token=token)

    @classmethod
    def deny(cls, reason: DenyReason, retry_after: float | None = None) -> Decision:
        return cls(allowed=False, reason=reason, retry_after=retry_after)


@dataclass(frozen=True)
class AdmissionRequest:
    """What a check gets to look at."""

    address: str
    resource_id: str | None = None
    credential: str | None = None
    identity: Identity | None = None


Check = Callable[[AdmissionRequest], Awaitable[Decision]]


class AdmissionPipeline:
    """Runs checks left to right and stops at the first denial."""

    def __init__(self, checks: Sequence[Check]):
        self.checks = list(checks)

    async def evaluate(self, request: AdmissionRequest) -> Decision:
        try:
            for check in self.checks:
                decision = await check(request)
                if not decision.allowed:
                    return decision
                if decision.identity is not None:
                    request = replace(request, identity=decision.identity)
        except StoreUnavailableError as e:
            logger.warning("Admission refused, store unavailable: %s", e)
            return Decision.deny(DenyReason.TEMPORARY)
        except Exception as e:
            log_exception(logger, e, "Admission check failed")
            return Decision.deny(DenyReason.TEMPORARY)
        return Decision.allow(identity=request.identity)


def address_ban_check(registry: BanRegistry) -> Check:
    """Deny requests from banned address ranges."""

    async def check(request: AdmissionRequest) -> Decision:
        if await registry.is_address_banned(request.address):
            return Decision.deny(DenyReason.ADDRESS_BANNED)
        return Decision.allow()

    return check


def credential_check(credentials: CredentialService) -> Check:
    """Require a valid, unrevoked bearer credential of an unbanned account."""

    async def check(request: AdmissionRequest) -> Decision:
        if not request.credential:
            return Decision.deny(DenyReason.UNAUTHORIZED)
        try:
            identity = await credentials.verify(request.credential)
        except (CredentialError, BannedError) as e:
            logger.debug("Credential rejected: %s", e.message)
            return Decision.deny(DenyReason.UNAUTHORIZED)
        return Decision.allow(identity=identity)

    return check


def passkey_check(identity_store: IdentityStore, registry: BanRegistry) -> Check:
    """Require a passkey that belongs to an unbanned account."""

    async def check(request: AdmissionRequest) -> Decision:
        if not request.credential:
            return Decision.deny(DenyReason.UNAUTHORIZED)
        identity = await identity_store.find_by_passkey(request.credential)
        if identity is not None:
            identity = await registry.confirm_ban_flag(identity)
        # Banned accounts look the same as unknown keys
        if identity is None or identity.banned:
            return Decision.deny(DenyReason.UNAUTHORIZED)
        return Decision.allow(identity=identity)

    return check


def resource_check(resource_store: ResourceStore) -> Check:
    """Deny requests for resources the tracker does not know."""

    async def check(request: AdmissionRequest) -> Decision:
        if not request.resource_id or not await resource_store.exists(request.resource_id):
            return Decision.deny(DenyReason.RESOURCE_NOT_FOUND)
        return Decision.allow()

    return check


def build_tracker_pipeline(
    registry: BanRegistry,
    identity_store: IdentityStore,
    resource_store: ResourceStore,
    credential_mode: CredentialMode = CredentialMode.PASSKEY,
    credentials: CredentialService | None = None,
) -> AdmissionPipeline:
    """Address ban, then identity, then resource existence."""
    if credential_mode == CredentialMode.BEARER:
        if credentials is None:
            msg = "Bearer credential mode needs a credential service"
            raise ConfigurationError(msg)
        identity = credential_check(credentials)
    else:
        identity = passkey_check(identity_store, registry)

    return AdmissionPipeline(
        [
            address_ban_check(registry),
            identity,
            resource_check(resource_store),
        ]
    )
