"""Forward-only sync cursors for explorer polling and consensus-layer epochs."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from staking_rewards_tracker.core.errors import RewardTrackerError
from staking_rewards_tracker.core.models import RewardEvent, SyncCursors

logger = logging.getLogger(__name__)

# Ethereum mainnet beacon chain: genesis at 2020-12-01 12:00:23 UTC, 32 slots of 12s
GENESIS_TIMESTAMP = 1606824023
SECONDS_PER_EPOCH = 384
# One day of epochs
MAX_EPOCH_BATCH = 225

ONE_DAY = 86_400


def current_epoch(now: int, genesis: int = GENESIS_TIMESTAMP, epoch_seconds: int = SECONDS_PER_EPOCH) -> int:
    """Return the epoch containing ``now`` (0 before genesis)."""
    if now < genesis:
        return 0
    return (now - genesis) // epoch_seconds


def epoch_end_timestamp(epoch: int, genesis: int = GENESIS_TIMESTAMP, epoch_seconds: int = SECONDS_PER_EPOCH) -> int:
    """Return the last second belonging to ``epoch``."""
    return genesis + (epoch + 1) * epoch_seconds - 1


def start_of_utc_year(now: int) -> int:
    """Return Unix seconds of January 1st 00:00 UTC of the year containing ``now``."""
    year = datetime.fromtimestamp(now, tz=UTC).year
    return int(datetime(year, 1, 1, tzinfo=UTC).timestamp())


class EvmCursor:
    """
    Timestamp cursor for explorer polling.

    States are "no cursor" (``last_fetched_timestamp is None``) and
    "cursor at T". Ingestion is due when there is no cursor, when more than a
    day has passed since T, or when the UTC calendar day changed since T.

    Parameters
    ----------
    last_fetched_timestamp : int | None
        Unix seconds of the last successful ingestion

    """

    def __init__(self, last_fetched_timestamp: int | None = None) -> None:
        self.last_fetched_timestamp = last_fetched_timestamp

    @property
    def is_initialized(self) -> bool:
        return self.last_fetched_timestamp is not None

    def should_fetch(self, now: int) -> bool:
        """Return True when ingestion is due at ``now``."""
        if self.last_fetched_timestamp is None:
            return True
        if now - self.last_fetched_timestamp > ONE_DAY:
            return True
        return now // ONE_DAY > self.last_fetched_timestamp // ONE_DAY

    def fetch_from(self, now: int) -> int:
        """
        Return the lower bound for the next ingestion.

        Without a cursor ingestion starts at the beginning of the current UTC
        year.
        """
        if self.last_fetched_timestamp is None:
            return start_of_utc_year(now)
        return self.last_fetched_timestamp

    def advance(self, now: int) -> None:
        """Move the cursor to ``now`` after a successful ingestion; never moves back."""
        if self.last_fetched_timestamp is None or now > self.last_fetched_timestamp:
            self.last_fetched_timestamp = now


class EpochBatchResult(BaseModel):
    """
    Outcome of one epoch batch.

    Attributes
    ----------
    processed_epochs : list[int]
        Epochs fetched successfully, in order
    events : list[RewardEvent]
        Rewards produced by the processed epochs
    failed_epoch : int | None
        Epoch at which the batch stopped
    error : str | None
        Failure message of ``failed_epoch``
    initialized : bool
        True when this run only initialized the cursor

    """

    processed_epochs: list[int] = Field(default_factory=list)
    events: list[RewardEvent] = Field(default_factory=list)
    failed_epoch: int | None = None
    error: str | None = None
    initialized: bool = False


class EpochCursor:
    """
    Epoch cursor for consensus-layer reward polling.

    An uninitialized cursor jumps to the current epoch without backfilling.
    A synced cursor at E processes ``E+1 .. min(E+max_batch, current)`` in
    order, stopping at the first failing epoch and keeping the epochs that
    succeeded before it.

    Parameters
    ----------
    last_synced_epoch : int | None
        Last processed epoch
    tracking_start_epoch : int | None
        Epoch at which tracking began
    max_batch : int
        Maximum epochs processed per run
    genesis : int
        Beacon chain genesis timestamp
    epoch_seconds : int
        Duration of one epoch

    """

    def __init__(
        self,
        last_synced_epoch: int | None = None,
        tracking_start_epoch: int | None = None,
        max_batch: int = MAX_EPOCH_BATCH,
        genesis: int = GENESIS_TIMESTAMP,
        epoch_seconds: int = SECONDS_PER_EPOCH,
    ) -> None:
        self.last_synced_epoch = last_synced_epoch
        self.tracking_start_epoch = tracking_start_epoch
        self.max_batch = max_batch
        self.genesis = genesis
        self.epoch_seconds = epoch_seconds

    @property
    def is_initialized(self) -> bool:
        return self.last_synced_epoch is not None

    def current_epoch(self, now: int) -> int:
        return current_epoch(now, self.genesis, self.epoch_seconds)

    def epoch_end_timestamp(self, epoch: int) -> int:
        return epoch_end_timestamp(epoch, self.genesis, self.epoch_seconds)

    def pending_epochs(self, now: int) -> range:
        """Return the epochs the next run would process."""
        if self.last_synced_epoch is None:
            return range(0)
        last = min(self.last_synced_epoch + self.max_batch, self.current_epoch(now))
        return range(self.last_synced_epoch + 1, last + 1)

    def run(self, fetch: Callable[[int], list[RewardEvent]], now: int) -> EpochBatchResult:
        """
        Advance the cursor by one batch.

        Parameters
        ----------
        fetch : Callable[[int], list[RewardEvent]]
            Fetches the rewards of one epoch; raises on failure
        now : int
            Current Unix seconds

        Returns
        -------
        EpochBatchResult
            Processed epochs, their rewards, and the failure that stopped the
            batch if any

        """
        if self.last_synced_epoch is None:
            epoch = self.current_epoch(now)
            self.last_synced_epoch = epoch
            if self.tracking_start_epoch is None:
                self.tracking_start_epoch = epoch
            logger.info("Epoch cursor initialized at %d, no backfill", epoch)
            return EpochBatchResult(initialized=True)

        result = EpochBatchResult()
        for epoch in self.pending_epochs(now):
            try:
                events = fetch(epoch)
            except RewardTrackerError as e:
                logger.warning("Epoch %d failed, committing %d epochs: %s", epoch, len(result.processed_epochs), e)
                result.failed_epoch = epoch
                result.error = str(e)
                break
            result.processed_epochs.append(epoch)
            result.events.extend(events)
            self.last_synced_epoch = epoch

        return result

    def to_cursors(self, cursors: SyncCursors) -> SyncCursors:
        """Return ``cursors`` updated with this cursor's state."""
        return cursors.model_copy(
            update={
                "last_synced_epoch": self.last_synced_epoch,
                "tracking_start_epoch": self.tracking_start_epoch,
            }
        )

    @classmethod
    def from_cursors(cls, cursors: SyncCursors, **kwargs: int) -> "EpochCursor":
        return cls(cursors.last_synced_epoch, cursors.tracking_start_epoch, **kwargs)
