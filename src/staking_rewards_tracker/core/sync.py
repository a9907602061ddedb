"""Per-tracker sync pipeline: ingest, reconcile, persist."""

import logging
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager

from pydantic import BaseModel, Field

from staking_rewards_tracker.core.cursor import MAX_EPOCH_BATCH, EpochCursor, EvmCursor
from staking_rewards_tracker.core.errors import OperationInProgressError, RewardTrackerError
from staking_rewards_tracker.core.models import RewardEvent, SyncCursors, Tracker
from staking_rewards_tracker.core.reconciliation import ReconciliationEngine
from staking_rewards_tracker.ingestion.beaconcha import ConsensusRewardsAdapter, ValidatorOverview
from staking_rewards_tracker.ingestion.etherscan import ExplorerIngestionAdapter

logger = logging.getLogger(__name__)


class OperationState:
    """
    "Operation in progress" flag with a safety timeout.

    When an operation has not finished after ``timeout`` seconds the flag is
    reset so new operations can start. The running call itself is never
    cancelled.

    Parameters
    ----------
    timeout : float
        Seconds before the flag resets on its own
    timer_factory : Callable
        Builds the timeout timer, ``threading.Timer`` compatible

    """

    def __init__(self, timeout: float = 600.0, timer_factory: Callable = threading.Timer) -> None:
        self.timeout = timeout
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self._generation = 0
        self.in_progress = False
        self.timed_out = False

    def start(self) -> bool:
        """Set the flag; return False if an operation is already in progress."""
        with self._lock:
            if self.in_progress:
                return False
            self.in_progress = True
            self.timed_out = False
            self._generation += 1
            generation = self._generation
            self._timer = self._timer_factory(self.timeout, lambda: self._expire(generation))
            self._timer.daemon = True
            self._timer.start()
            return True

    def finish(self) -> None:
        """Clear the flag and cancel the pending timeout."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self.in_progress = False

    def _expire(self, generation: int) -> None:
        with self._lock:
            # A late timer of an earlier run must not clear a newer one
            if generation != self._generation or not self.in_progress:
                return
            logger.warning("Operation still running after %.0fs, releasing the in-progress flag", self.timeout)
            self.in_progress = False
            self.timed_out = True
            self._timer = None

    @contextmanager
    def running(self, name: str = "operation") -> Iterator[None]:
        """
        Hold the flag for the duration of a block.

        Raises
        ------
        OperationInProgressError
            If the flag is already set

        """
        if not self.start():
            msg = f"{name} is already in progress"
            raise OperationInProgressError(msg)
        try:
            yield
        finally:
            self.finish()


class SyncReport(BaseModel):
    """
    Outcome of syncing one tracker.

    Attributes
    ----------
    tracker_id : str
        Synced tracker
    events : list[RewardEvent]
        Latest canonical events, newest first
    new_events : int
        Events seen for the first time
    explorer_fetched : bool
        Whether the explorer feeds were read this run
    epochs_processed : int
        Consensus-layer epochs committed this run
    cursors : SyncCursors
        Cursor state after the run
    validator_overview : ValidatorOverview | None
        Latest validator status, when refreshed
    warnings : list[str]
        Degraded steps that did not abort the run
    error : str | None
        Failure that aborted the run

    """

    tracker_id: str
    events: list[RewardEvent] = Field(default_factory=list)
    new_events: int = 0
    explorer_fetched: bool = False
    epochs_processed: int = 0
    cursors: SyncCursors = Field(default_factory=SyncCursors)
    validator_overview: ValidatorOverview | None = None
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TrackerSynchronizer:
    """
    Runs the sync pipeline of a tracker.

    Steps run strictly in order: load cursors, explorer ingestion when the
    EVM cursor says so, one epoch batch when a validator key is configured,
    reconciliation, upload of the ingested events to the remote store,
    cursor persistence, and a validator overview refresh.

    Cursors are only persisted once the ingested events reached the remote
    store, so a failed upload is retried by re-ingesting on the next run.

    Parameters
    ----------
    engine : ReconciliationEngine
        Engine over the tracker stores
    explorer : ExplorerIngestionAdapter | None
        Explorer adapter, explorer ingestion is skipped if None
    consensus : ConsensusRewardsAdapter | None
        Consensus-layer adapter, epoch sync is skipped if None
    max_epoch_batch : int
        Epochs processed per run
    operation_timeout : float
        Safety timeout of the per-tracker in-progress flag

    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        explorer: ExplorerIngestionAdapter | None = None,
        consensus: ConsensusRewardsAdapter | None = None,
        max_epoch_batch: int = MAX_EPOCH_BATCH,
        operation_timeout: float = 600.0,
    ) -> None:
        self.engine = engine
        self.explorer = explorer
        self.consensus = consensus
        self.max_epoch_batch = max_epoch_batch
        self.operation_timeout = operation_timeout
        self._operations: dict[str, OperationState] = {}
        self._operations_lock = threading.Lock()

    def operation_state(self, tracker_id: str) -> OperationState:
        """Return the in-progress flag of a tracker."""
        with self._operations_lock:
            if tracker_id not in self._operations:
                self._operations[tracker_id] = OperationState(self.operation_timeout)
            return self._operations[tracker_id]

    def sync(self, tracker: Tracker, now: int | None = None) -> SyncReport:
        """
        Sync one tracker.

        Parameters
        ----------
        tracker : Tracker
            Tracker to sync
        now : int | None
            Current Unix seconds, defaults to the wall clock

        Returns
        -------
        SyncReport
            Canonical events and warnings of the run

        Raises
        ------
        OperationInProgressError
            If the tracker is already being synced
        StoreWriteError
            If the local snapshot cannot be written

        """
        now = int(time.time()) if now is None else now
        with self.operation_state(tracker.id).running(f"Sync of {tracker.id}"):
            return self._sync(tracker, now)

    def _sync(self, tracker: Tracker, now: int) -> SyncReport:
        local_cache = self.engine.local_cache
        previous = local_cache.get_cursors(tracker.id) or tracker.cursors
        report = SyncReport(tracker_id=tracker.id, cursors=previous)
        fresh: list[RewardEvent] = []

        evm_cursor = EvmCursor(previous.last_fetched_timestamp)
        if self.explorer is not None and evm_cursor.should_fetch(now):
            since = evm_cursor.fetch_from(now)
            logger.info("Fetching explorer transfers for %s since %d", tracker.id, since)
            result = self.explorer.fetch_incoming(tracker, since)
            fresh.extend(result.events)
            report.explorer_fetched = True
            for feed, error in result.feed_errors.items():
                report.warnings.append(f"Explorer {feed} feed failed: {error}")
            if result.complete:
                evm_cursor.advance(now)

        epoch_cursor = EpochCursor.from_cursors(previous, max_batch=self.max_epoch_batch)
        if self.consensus is not None and tracker.validator_public_key:
            batch = epoch_cursor.run(lambda epoch: self.consensus.fetch_epoch(tracker, epoch), now)
            fresh.extend(batch.events)
            report.epochs_processed = len(batch.processed_epochs)
            if batch.error is not None:
                report.warnings.append(f"Epoch {batch.failed_epoch} failed: {batch.error}")

        reconciled = self.engine.reconcile(tracker.id, fresh, previous.last_fetched_timestamp)
        report.events = reconciled.events
        report.new_events = len(reconciled.new_hashes)
        report.warnings.extend(reconciled.warnings)

        cursors = epoch_cursor.to_cursors(previous).model_copy(
            update={"last_fetched_timestamp": evm_cursor.last_fetched_timestamp}
        )
        if fresh:
            fresh_hashes = {event.hash for event in fresh}
            uploads = [
                event.model_copy(update={"holding_override": None})
                for event in reconciled.events
                if event.hash in fresh_hashes
            ]
            try:
                self.engine.remote_store.upsert_batch(tracker.id, uploads)
            except RewardTrackerError as e:
                logger.warning("Uploading %d events of %s failed: %s", len(uploads), tracker.id, e)
                report.warnings.append(f"Remote store upload failed, will retry next sync: {e}")
                cursors = previous

        local_cache.save_cursors(tracker.id, cursors)
        report.cursors = cursors

        if self.consensus is not None and tracker.validator_public_key:
            try:
                report.validator_overview = self.consensus.fetch_overview(tracker)
            except RewardTrackerError as e:
                logger.warning("Validator overview of %s failed: %s", tracker.id, e)
                report.warnings.append(f"Validator overview unavailable: {e}")

        logger.info(
            "Synced %s: %d events (%d new), %d warnings",
            tracker.id,
            len(report.events),
            report.new_events,
            len(report.warnings),
        )
        return report

    def sync_all(self, trackers: list[Tracker], now: int | None = None, max_workers: int = 4) -> list[SyncReport]:
        """
        Sync several trackers in parallel, one worker task per tracker.

        A tracker whose sync raises gets a report with ``error`` set; the
        other trackers are unaffected.

        Parameters
        ----------
        trackers : list[Tracker]
            Trackers with distinct ids
        now : int | None
            Current Unix seconds, shared by all trackers
        max_workers : int
            Thread pool size

        Returns
        -------
        list[SyncReport]
            Reports in the order of ``trackers``

        """
        if not trackers:
            return []
        ids = [tracker.id for tracker in trackers]
        if len(set(ids)) != len(ids):
            msg = "Trackers synced together must have distinct ids"
            raise ValueError(msg)

        now = int(time.time()) if now is None else now
        reports: dict[str, SyncReport] = {}

        with ThreadPoolExecutor(max_workers=min(len(trackers), max_workers)) as executor:
            future_to_tracker = {executor.submit(self.sync, tracker, now): tracker for tracker in trackers}

            for future in as_completed(future_to_tracker):
                tracker = future_to_tracker[future]
                try:
                    reports[tracker.id] = future.result()
                except RewardTrackerError as e:
                    logger.error("Sync of %s failed: %s", tracker.id, e)
                    reports[tracker.id] = SyncReport(tracker_id=tracker.id, error=str(e))
                except Exception as e:
                    # Continue with other trackers even if one hits an unexpected error
                    logger.exception("Sync of %s failed unexpectedly", tracker.id)
                    reports[tracker.id] = SyncReport(tracker_id=tracker.id, error=f"{type(e).__name__}: {e}")

        return [reports[tracker_id] for tracker_id in ids]
