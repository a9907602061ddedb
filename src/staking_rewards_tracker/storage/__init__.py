"""Local cache, remote store and holding override store."""

from staking_rewards_tracker.storage.base import HoldingOverrideStore, LocalCache, RemoteStore
from staking_rewards_tracker.storage.files import (
    JsonLocalCache,
    JsonOverrideStore,
    JsonRemoteStore,
    open_file_stores,
)
from staking_rewards_tracker.storage.memory import InMemoryLocalCache, InMemoryOverrideStore, InMemoryRemoteStore

__all__ = [
    "HoldingOverrideStore",
    "InMemoryLocalCache",
    "InMemoryOverrideStore",
    "InMemoryRemoteStore",
    "JsonLocalCache",
    "JsonOverrideStore",
    "JsonRemoteStore",
    "LocalCache",
    "RemoteStore",
    "open_file_stores",
]
