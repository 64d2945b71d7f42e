"""Key layout in the shared store."""

from __future__ import annotations


class StoreKeys:
    """Builds namespaced keys for the shared key-value store."""

    def __init__(self, prefix: str = "trackgate:"):
        self.prefix = prefix

    def _key(self, *parts: object) -> str:
        return self.prefix + ":".join(str(p) for p in parts)

    # Authentication
    def denylist(self, credential_id: str) -> str:
        return self._key("auth", "blacklist", credential_id)

    def login_attempts(self, address_key: str | int) -> str:
        return self._key("auth", "login", "attempts", address_key)

    # Bans
    def account_ban_check(self, account_id: int) -> str:
        return self._key("ban", "user", "check", account_id)

    def account_ban_generation(self, account_id: int) -> str:
        return self._key("ban", "user", "generation", account_id)

    def account_lock(self, account_id: int) -> str:
        return self._key("ban", "user", "lock", account_id)
