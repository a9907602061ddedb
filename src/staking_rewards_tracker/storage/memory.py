"""In-memory store implementations."""

import threading

from staking_rewards_tracker.core.errors import NotFoundError
from staking_rewards_tracker.core.models import HoldingStatus, PaymentStatus, RewardEvent, SyncCursors


def sort_newest_first(events: list[RewardEvent]) -> list[RewardEvent]:
    """Sort events by timestamp descending, ties broken by hash."""
    return sorted(events, key=lambda e: (-e.timestamp_sec, e.hash))


class InMemoryLocalCache:
    """Local cache keeping one snapshot per tracker in a dict."""

    def __init__(self) -> None:
        self._events: dict[str, dict[str, RewardEvent]] = {}
        self._cursors: dict[str, SyncCursors] = {}
        self._lock = threading.Lock()

    def get_all(self, tracker_id: str) -> list[RewardEvent]:
        with self._lock:
            return sort_newest_first(list(self._events.get(tracker_id, {}).values()))

    def replace_all(self, tracker_id: str, events: list[RewardEvent]) -> None:
        with self._lock:
            self._events[tracker_id] = {event.hash: event for event in events}

    def get_one(self, tracker_id: str, event_hash: str) -> RewardEvent | None:
        with self._lock:
            return self._events.get(tracker_id, {}).get(event_hash)

    def put_one(self, tracker_id: str, event: RewardEvent) -> None:
        with self._lock:
            self._events.setdefault(tracker_id, {})[event.hash] = event

    def delete_all(self, tracker_id: str) -> None:
        with self._lock:
            self._events.pop(tracker_id, None)
            self._cursors.pop(tracker_id, None)

    def get_cursors(self, tracker_id: str) -> SyncCursors | None:
        with self._lock:
            return self._cursors.get(tracker_id)

    def save_cursors(self, tracker_id: str, cursors: SyncCursors) -> None:
        with self._lock:
            self._cursors[tracker_id] = cursors


class InMemoryRemoteStore:
    """
    Remote store stand-in holding documents in a dict.

    ``upsert_batch`` only inserts documents that do not exist yet; settlement
    state of an existing document changes only through ``update_status``.
    """

    BATCH_SIZE = 500

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, RewardEvent]] = {}
        self._lock = threading.Lock()
        self.batches_written = 0

    def get_delta(self, tracker_id: str, since: int | None = None) -> list[RewardEvent]:
        with self._lock:
            docs = list(self._docs.get(tracker_id, {}).values())
        if since is not None:
            docs = [doc for doc in docs if doc.timestamp_sec > since]
        return sort_newest_first(docs)

    def upsert_batch(self, tracker_id: str, events: list[RewardEvent]) -> None:
        for i in range(0, len(events), self.BATCH_SIZE):
            chunk = events[i : i + self.BATCH_SIZE]
            with self._lock:
                docs = self._docs.setdefault(tracker_id, {})
                for event in chunk:
                    if event.hash not in docs:
                        docs[event.hash] = event.model_copy(update={"holding_override": None})
                self.batches_written += 1

    def update_status(
        self,
        tracker_id: str,
        event_hash: str,
        status: PaymentStatus,
        settlement_ref: str | None,
    ) -> None:
        with self._lock:
            docs = self._docs.get(tracker_id, {})
            doc = docs.get(event_hash)
            if doc is None:
                msg = f"No remote document {event_hash} for tracker {tracker_id}"
                raise NotFoundError(msg)
            docs[event_hash] = doc.model_copy(update={"status": status, "settlement_ref": settlement_ref})

    def delete_all(self, tracker_id: str) -> None:
        with self._lock:
            self._docs.pop(tracker_id, None)


class InMemoryOverrideStore:
    """Holding override map kept in a dict."""

    def __init__(self) -> None:
        self._overrides: dict[str, dict[str, HoldingStatus]] = {}
        self._lock = threading.Lock()

    def get_all(self, tracker_id: str) -> dict[str, HoldingStatus]:
        with self._lock:
            return dict(self._overrides.get(tracker_id, {}))

    def set(self, tracker_id: str, event_hash: str, status: HoldingStatus) -> None:
        with self._lock:
            self._overrides.setdefault(tracker_id, {})[event_hash] = status

    def delete_all(self, tracker_id: str) -> None:
        with self._lock:
            self._overrides.pop(tracker_id, None)
