"""Storage backends and collaborator contracts for trackgate."""

from trackgate.storage.ban_store import BanStore, MemoryBanStore
from trackgate.storage.identity import (
    IdentityStore,
    MemoryIdentityStore,
    MemoryResourceStore,
    ResourceStore,
)
from trackgate.storage.keys import StoreKeys
from trackgate.storage.kv_store import KeyValueStore, MemoryStore, RedisStore, create_store

__all__ = [
    "BanStore",
    "IdentityStore",
    "KeyValueStore",
    "MemoryBanStore",
    "MemoryIdentityStore",
    "MemoryResourceStore",
    "MemoryStore",
    "RedisStore",
    "ResourceStore",
    "StoreKeys",
    "create_store",
]
