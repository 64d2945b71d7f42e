"""Bearer credentials.

Credentials are compact JWS tokens signed with a pre-shared HMAC secret.
A token is checked locally first (header algorithm, signature, issuer,
audience, expiry) and only then against the revocation denylist in the
shared store, so forged tokens never cost a store round-trip.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from trackgate.models import CredentialConfig, Identity
from trackgate.storage.identity import IdentityStore
from trackgate.storage.keys import StoreKeys
from trackgate.storage.kv_store import KeyValueStore
from trackgate.utils.events import EventType, emit_security_event
from trackgate.utils.exceptions import (
    BannedError,
    ConfigurationError,
    ExpiredCredentialError,
    InvalidIdentityError,
    MalformedCredentialError,
    RevokedCredentialError,
    UnknownIdentityError,
)

if TYPE_CHECKING:  # pragma: no cover
    from trackgate.security.ban_registry import BanRegistry

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32
REVOKED_MARKER = "revoked"

_DIGESTS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


@dataclass(frozen=True)
class Claims:
    """Decoded payload of a locally valid credential."""

    subject: int
    credential_id: str
    issued_at: int
    expires_at: int
    issuer: str
    audience: str
    handle: str | None = None
    role: str | None = None


class CredentialService:
    """Issues, verifies and revokes bearer credentials."""

    def __init__(
        self,
        identity_store: IdentityStore,
        kv_store: KeyValueStore,
        config: CredentialConfig,
        keys: StoreKeys | None = None,
        clock: Callable[[], float] = time.time,
        ban_registry: BanRegistry | None = None,
    ):
        """Initialize credential service.

        With a ``ban_registry``, a set ``banned`` flag is confirmed against
        qualifying bans before a credential is refused.

        Raises:
            ConfigurationError: if the signing secret is missing or shorter
                than 32 characters, or the algorithm is unsupported

        """
        secret = config.signing_secret
        if not secret:
            msg = "credentials.signing_secret is not configured"
            raise ConfigurationError(msg)
        if len(secret) < MIN_SECRET_LENGTH:
            msg = f"credentials.signing_secret must be at least {MIN_SECRET_LENGTH} characters"
            raise ConfigurationError(msg, {"length": len(secret)})
        if config.algorithm not in _DIGESTS:
            msg = f"Unsupported signing algorithm {config.algorithm}"
            raise ConfigurationError(msg, {"algorithm": config.algorithm})

        self.identity_store = identity_store
        self.kv_store = kv_store
        self.config = config
        self.keys = keys or StoreKeys()
        self.ban_registry = ban_registry
        self._clock = clock
        self._secret = secret.encode("utf-8")
        self._digest = _DIGESTS[config.algorithm]

    def _sign(self, signing_input: str) -> str:
        mac = hmac.new(self._secret, signing_input.encode("ascii"), self._digest)
        return _encode_segment(mac.digest())

    async def issue(self, identity: Identity) -> str:
        """Issue a credential for ``identity``.

        Raises:
            InvalidIdentityError: if the identity has no id or handle

        """
        if not getattr(identity, "id", None) or not getattr(identity, "handle", None):
            msg = "Cannot issue a credential without account id and handle"
            raise InvalidIdentityError(msg)

        issued_at = int(self._clock())
        payload: dict[str, Any] = {
            "sub": str(identity.id),
            "jti": uuid.uuid4().hex,
            "iat": issued_at,
            "exp": issued_at + int(self.config.lifetime),
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "handle": identity.handle,
            "role": identity.role.value,
        }
        header = {"alg": self.config.algorithm, "typ": "JWT"}
        signing_input = ".".join(
            _encode_segment(json.dumps(part, separators=(",", ":")).encode("utf-8"))
            for part in (header, payload)
        )
        logger.debug("Issued credential %s for account %d", payload["jti"], identity.id)
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, check_expiry: bool = True) -> Claims:
        """Check a token locally and return its claims.

        Raises:
            MalformedCredentialError: bad structure, algorithm, signature,
                issuer or audience
            ExpiredCredentialError: if ``check_expiry`` and the token expired

        """
        if not isinstance(token, str) or token.count(".") != 2:
            msg = "Credential is not a compact JWS"
            raise MalformedCredentialError(msg)
        header_b64, payload_b64, signature = token.split(".")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError) as e:
            msg = "Credential header is not valid JSON"
            raise MalformedCredentialError(msg) from e
        # Reject algorithm confusion before touching the signature
        if not isinstance(header, dict) or header.get("alg") != self.config.algorithm:
            msg = "Credential signed with an unexpected algorithm"
            raise MalformedCredentialError(msg)

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected, signature):
            msg = "Credential signature mismatch"
            raise MalformedCredentialError(msg)

        try:
            payload = json.loads(_decode_segment(payload_b64))
            claims = Claims(
                subject=int(payload["sub"]),
                credential_id=str(payload["jti"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                issuer=payload["iss"],
                audience=payload["aud"],
                handle=payload.get("handle"),
                role=payload.get("role"),
            )
        except (binascii.Error, ValueError, TypeError, KeyError) as e:
            msg = "Credential payload is missing or has invalid claims"
            raise MalformedCredentialError(msg) from e

        if claims.issuer != self.config.issuer or claims.audience != self.config.audience:
            msg = "Credential issuer or audience mismatch"
            raise MalformedCredentialError(msg)

        if check_expiry and self._clock() >= claims.expires_at + self.config.leeway:
            msg = "Credential has expired"
            raise ExpiredCredentialError(msg, {"expired_at": claims.expires_at})
        return claims

    async def verify(self, token: str) -> Identity:
        """Return the identity a token was issued to.

        Raises:
            MalformedCredentialError: token fails local checks
            ExpiredCredentialError: token is past its expiry
            RevokedCredentialError: token was revoked
            UnknownIdentityError: account no longer exists
            BannedError: account is banned
            StoreUnavailableError: denylist could not be consulted

        """
        claims = self.decode(token)
        if await self.is_revoked(claims.credential_id):
            msg = "Credential has been revoked"
            raise RevokedCredentialError(msg)

        identity = await self.identity_store.find_by_id(claims.subject)
        if identity is None:
            msg = "Credential refers to an unknown account"
            raise UnknownIdentityError(msg, {"account_id": claims.subject})
        if self.ban_registry is not None:
            identity = await self.ban_registry.confirm_ban_flag(identity)
        if identity.banned:
            msg = "Account is banned"
            raise BannedError(msg, {"account_id": identity.id})
        return identity

    async def revoke(self, token: str) -> bool:
        """Put a credential on the denylist until it would have expired.

        Returns:
            True if the credential was revoked, False if it had already expired

        Raises:
            MalformedCredentialError: if the token is not one of ours

        """
        claims = self.decode(token, check_expiry=False)
        remaining = claims.expires_at - self._clock()
        if remaining <= 0:
            logger.debug("Credential %s already expired", claims.credential_id)
            return False

        await self.kv_store.set(
            self.keys.denylist(claims.credential_id),
            REVOKED_MARKER,
            ttl=math.ceil(remaining),
        )
        logger.info(
            "Revoked credential %s for account %d", claims.credential_id, claims.subject
        )
        await emit_security_event(
            EventType.CREDENTIAL_REVOKED,
            "credentials",
            credential_id=claims.credential_id,
            account_id=claims.subject,
        )
        return True

    async def is_revoked(self, credential_id: str) -> bool:
        """Return True if the credential is on the denylist.

        Store failures propagate so that callers fail closed.
        """
        return await self.kv_store.get(self.keys.denylist(credential_id)) is not None
