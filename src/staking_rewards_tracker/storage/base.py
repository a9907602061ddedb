"""Interfaces of the stores the reconciliation engine reads and writes."""

from typing import Protocol

from staking_rewards_tracker.core.models import HoldingStatus, PaymentStatus, RewardEvent, SyncCursors


class LocalCache(Protocol):
    """
    Fast local snapshot of a tracker's canonical events.

    Methods
    -------
    get_all(tracker_id)
        All events of a tracker, newest first
    replace_all(tracker_id, events)
        Replace the tracker's snapshot
    get_one(tracker_id, event_hash)
        One event by composite key
    put_one(tracker_id, event)
        Upsert one event
    delete_all(tracker_id)
        Remove events and cursors of a tracker
    get_cursors(tracker_id) / save_cursors(tracker_id, cursors)
        Sync cursor metadata

    """

    def get_all(self, tracker_id: str) -> list[RewardEvent]: ...

    def replace_all(self, tracker_id: str, events: list[RewardEvent]) -> None: ...

    def get_one(self, tracker_id: str, event_hash: str) -> RewardEvent | None: ...

    def put_one(self, tracker_id: str, event: RewardEvent) -> None: ...

    def delete_all(self, tracker_id: str) -> None: ...

    def get_cursors(self, tracker_id: str) -> SyncCursors | None: ...

    def save_cursors(self, tracker_id: str, cursors: SyncCursors) -> None: ...


class RemoteStore(Protocol):
    """
    Durable store of reward documents keyed by hash.

    Methods
    -------
    get_delta(tracker_id, since)
        Events with ``timestamp_sec > since`` (all when since is None)
    upsert_batch(tracker_id, events)
        Batched idempotent upsert
    update_status(tracker_id, event_hash, status, settlement_ref)
        Targeted settlement update
    delete_all(tracker_id)
        Remove every document of a tracker

    """

    def get_delta(self, tracker_id: str, since: int | None = None) -> list[RewardEvent]: ...

    def upsert_batch(self, tracker_id: str, events: list[RewardEvent]) -> None: ...

    def update_status(
        self,
        tracker_id: str,
        event_hash: str,
        status: PaymentStatus,
        settlement_ref: str | None,
    ) -> None: ...

    def delete_all(self, tracker_id: str) -> None: ...


class HoldingOverrideStore(Protocol):
    """Idempotent per-tracker map of event hash to holding status."""

    def get_all(self, tracker_id: str) -> dict[str, HoldingStatus]: ...

    def set(self, tracker_id: str, event_hash: str, status: HoldingStatus) -> None: ...

    def delete_all(self, tracker_id: str) -> None: ...
