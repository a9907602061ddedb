"""Merge of local, remote, and freshly ingested rewards into one canonical set."""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from staking_rewards_tracker.core.errors import DeletionError, NotFoundError, RewardTrackerError
from staking_rewards_tracker.core.models import HoldingStatus, PaymentStatus, RewardEvent
from staking_rewards_tracker.storage.base import HoldingOverrideStore, LocalCache, RemoteStore
from staking_rewards_tracker.storage.memory import sort_newest_first

logger = logging.getLogger(__name__)


def merge(
    local: Iterable[RewardEvent],
    remote_delta: Iterable[RewardEvent],
    freshly_ingested: Iterable[RewardEvent],
) -> list[RewardEvent]:
    """
    Merge three event sets into one hash-deduplicated canonical set.

    Precedence per hash:

    1. ``status``/``settlement_ref`` from ``remote_delta`` win over local.
    2. Economic fields (``amount``, ``timestamp_sec``, ``source_kind``) keep
       the first-written value: local, then remote, then fresh.
    3. ``holding_override`` is only ever carried over from ``local``.

    The result is sorted newest first (ties by hash), and merging the output
    again with the same remote and fresh sets returns it unchanged.

    Parameters
    ----------
    local : Iterable[RewardEvent]
        Current local snapshot
    remote_delta : Iterable[RewardEvent]
        Documents read from the remote store
    freshly_ingested : Iterable[RewardEvent]
        Events just returned by the ingestion adapters

    Returns
    -------
    list[RewardEvent]
        New canonical snapshot

    """
    merged: dict[str, RewardEvent] = {}

    for event in local:
        merged.setdefault(event.hash, event)

    for event in remote_delta:
        existing = merged.get(event.hash)
        if existing is None:
            merged[event.hash] = event.model_copy(update={"holding_override": None})
        else:
            merged[event.hash] = existing.model_copy(
                update={"status": event.status, "settlement_ref": event.settlement_ref}
            )

    for event in freshly_ingested:
        if event.hash not in merged:
            merged[event.hash] = event.model_copy(
                update={"status": PaymentStatus.UNPAID, "settlement_ref": None, "holding_override": None}
            )

    return sort_newest_first(list(merged.values()))


def apply_overrides(events: Iterable[RewardEvent], overrides: dict[str, HoldingStatus]) -> list[RewardEvent]:
    """Layer holding overrides onto events; events without an override keep theirs."""
    result = []
    for event in events:
        override = overrides.get(event.hash)
        if override is not None and override != event.holding_override:
            event = event.model_copy(update={"holding_override": override})
        result.append(event)
    return result


class ReconcileResult(BaseModel):
    """
    Canonical snapshot produced by one reconciliation.

    Attributes
    ----------
    events : list[RewardEvent]
        Canonical events with holding overrides applied
    new_hashes : list[str]
        Hashes that were not in the local snapshot or the remote delta
    warnings : list[str]
        Degraded-path messages (e.g. remote store unreachable)

    """

    events: list[RewardEvent]
    new_hashes: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ReconciliationEngine:
    """
    Applies the merge rules against the stores and hosts user mutations.

    The engine only writes the remote store for explicit user actions
    (settlement changes); reconciliation itself reads the remote delta and
    rewrites the local snapshot in full.

    Parameters
    ----------
    local_cache : LocalCache
        Fast local snapshot store
    remote_store : RemoteStore
        Durable store, source of truth for settlement state
    override_store : HoldingOverrideStore
        Local holding override map

    """

    def __init__(
        self,
        local_cache: LocalCache,
        remote_store: RemoteStore,
        override_store: HoldingOverrideStore,
    ) -> None:
        self.local_cache = local_cache
        self.remote_store = remote_store
        self.override_store = override_store

    def reconcile(
        self,
        tracker_id: str,
        freshly_ingested: list[RewardEvent],
        remote_since: int | None = None,
    ) -> ReconcileResult:
        """
        Rebuild the local snapshot of a tracker.

        When the local snapshot is empty the full remote history is read
        regardless of ``remote_since``, so a cleared cache is restored.

        Parameters
        ----------
        tracker_id : str
            Tracker to reconcile
        freshly_ingested : list[RewardEvent]
            Events from the ingestion adapters
        remote_since : int | None
            Only remote documents newer than this are read

        Returns
        -------
        ReconcileResult
            New canonical events and warnings

        """
        warnings = []
        local = self.local_cache.get_all(tracker_id)
        since = remote_since if local else None

        try:
            remote_delta = self.remote_store.get_delta(tracker_id, since)
        except RewardTrackerError as e:
            logger.warning("Remote store read failed for %s, merging without it: %s", tracker_id, e)
            warnings.append(f"Remote store unavailable: {e}")
            remote_delta = []

        known = {event.hash for event in local} | {event.hash for event in remote_delta}
        new_hashes = sorted({event.hash for event in freshly_ingested} - known)

        canonical = merge(local, remote_delta, freshly_ingested)
        canonical = apply_overrides(canonical, self.override_store.get_all(tracker_id))
        self.local_cache.replace_all(tracker_id, canonical)

        logger.debug(
            "Reconciled %s: %d local, %d remote, %d fresh -> %d (%d new)",
            tracker_id,
            len(local),
            len(remote_delta),
            len(freshly_ingested),
            len(canonical),
            len(new_hashes),
        )
        return ReconcileResult(events=canonical, new_hashes=new_hashes, warnings=warnings)

    def canonical_events(self, tracker_id: str) -> list[RewardEvent]:
        """Return the local snapshot with holding overrides applied."""
        return apply_overrides(self.local_cache.get_all(tracker_id), self.override_store.get_all(tracker_id))

    def mark_paid(self, tracker_id: str, event_hash: str, settlement_ref: str | None = None) -> list[str]:
        """
        Mark a reward's tax as paid.

        Parameters
        ----------
        tracker_id : str
            Owning tracker
        event_hash : str
            Reward hash
        settlement_ref : str | None
            Hash of the swap transaction that settled it

        Returns
        -------
        list[str]
            Warnings, e.g. when the remote write failed

        Raises
        ------
        NotFoundError
            If the reward is not in the local snapshot

        """
        return self._set_status(tracker_id, event_hash, PaymentStatus.PAID, settlement_ref or None)

    def mark_unpaid(self, tracker_id: str, event_hash: str) -> list[str]:
        """Revert a reward to unpaid and clear its settlement reference."""
        return self._set_status(tracker_id, event_hash, PaymentStatus.UNPAID, None)

    def _set_status(
        self,
        tracker_id: str,
        event_hash: str,
        status: PaymentStatus,
        settlement_ref: str | None,
    ) -> list[str]:
        event = self.local_cache.get_one(tracker_id, event_hash)
        if event is None:
            msg = f"No reward {event_hash} for tracker {tracker_id}"
            raise NotFoundError(msg)

        updated = event.model_copy(update={"status": status, "settlement_ref": settlement_ref})
        self.local_cache.put_one(tracker_id, updated)

        try:
            try:
                self.remote_store.update_status(tracker_id, event_hash, status, settlement_ref)
            except NotFoundError:
                self.remote_store.upsert_batch(tracker_id, [updated.model_copy(update={"holding_override": None})])
        except RewardTrackerError as e:
            logger.warning("Remote status write for %s/%s failed: %s", tracker_id, event_hash, e)
            return [f"Saved locally, remote store write failed: {e}"]
        return []

    def set_holding(self, tracker_id: str, event_hash: str, status: HoldingStatus) -> None:
        """
        Set the holding override of a reward.

        Raises
        ------
        NotFoundError
            If the reward is not in the local snapshot

        """
        event = self.local_cache.get_one(tracker_id, event_hash)
        if event is None:
            msg = f"No reward {event_hash} for tracker {tracker_id}"
            raise NotFoundError(msg)
        self.override_store.set(tracker_id, event_hash, status)
        self.local_cache.put_one(tracker_id, event.model_copy(update={"holding_override": status}))

    def mark_sold_in_range(self, tracker_id: str, year: int, start_month: int = 1, end_month: int = 12) -> int:
        """
        Mark every reward received in a UTC month range of ``year`` as sold.

        Parameters
        ----------
        tracker_id : str
            Owning tracker
        year : int
            Calendar year
        start_month : int
            First month (1-12, inclusive)
        end_month : int
            Last month (1-12, inclusive)

        Returns
        -------
        int
            Number of rewards marked

        """
        if not 1 <= start_month <= end_month <= 12:
            msg = f"Invalid month range {start_month}-{end_month}"
            raise ValueError(msg)

        marked = 0
        for event in self.local_cache.get_all(tracker_id):
            received = datetime.fromtimestamp(event.timestamp_sec, tz=UTC)
            if received.year == year and start_month <= received.month <= end_month:
                self.set_holding(tracker_id, event.hash, HoldingStatus.SOLD)
                marked += 1
        return marked

    def delete_tracker_events(self, tracker_id: str) -> None:
        """
        Delete every reward of a tracker from all three stores.

        Each store is attempted even if an earlier one fails, and every
        deletion has finished before this returns.

        Raises
        ------
        DeletionError
            Naming the stores whose deletion failed

        """
        failures: dict[str, Exception] = {}
        for name, store in (
            ("local", self.local_cache),
            ("remote", self.remote_store),
            ("overrides", self.override_store),
        ):
            try:
                store.delete_all(tracker_id)
            except RewardTrackerError as e:
                logger.error("Deleting %s events from %s store failed: %s", tracker_id, name, e)
                failures[name] = e

        if failures:
            raise DeletionError(tracker_id, failures)
        logger.info("Deleted all events of %s", tracker_id)
