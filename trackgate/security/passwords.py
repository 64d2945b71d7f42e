"""Password verification.

Hashing runs in the default executor so a login burst does not stall the
event loop. Unknown accounts are verified against a dummy hash so the
response time does not reveal whether a handle exists.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

logger = logging.getLogger(__name__)


class PasswordVerifier(Protocol):
    """Checks a submitted secret against a stored hash."""

    async def verify(self, password_hash: str | None, secret: str) -> bool: ...


class Argon2PasswordVerifier:
    """Argon2id verifier backed by ``argon2-cffi``."""

    def __init__(self, hasher: PasswordHasher | None = None):
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._hasher.hash("trackgate-dummy-password")

    def hash(self, secret: str) -> str:
        """Hash ``secret`` for storage."""
        return self._hasher.hash(secret)

    def _verify_sync(self, password_hash: str | None, secret: str) -> bool:
        target = password_hash or self._dummy_hash
        try:
            matched = self._hasher.verify(target, secret)
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("Stored password hash is not a valid argon2 hash")
            return False
        return matched and password_hash is not None

    async def verify(self, password_hash: str | None, secret: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._verify_sync, password_hash, secret)
