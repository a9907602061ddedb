"""Tests for explorer and epoch sync cursors."""

import pytest
from conftest import make_event

from staking_rewards_tracker.core.cursor import (
    GENESIS_TIMESTAMP,
    MAX_EPOCH_BATCH,
    SECONDS_PER_EPOCH,
    EpochCursor,
    EvmCursor,
    current_epoch,
    epoch_end_timestamp,
    start_of_utc_year,
)
from staking_rewards_tracker.core.errors import ProviderError
from staking_rewards_tracker.core.models import SyncCursors

# 2025-01-15 12:00:00 UTC
NOON = 1736942400


def epoch_time(epoch: int) -> int:
    """Return a timestamp inside ``epoch``."""
    return GENESIS_TIMESTAMP + epoch * SECONDS_PER_EPOCH + 10


def test_epoch_arithmetic():
    """Test epoch numbering and epoch end timestamps."""
    assert current_epoch(GENESIS_TIMESTAMP) == 0
    assert current_epoch(GENESIS_TIMESTAMP + SECONDS_PER_EPOCH - 1) == 0
    assert current_epoch(GENESIS_TIMESTAMP + SECONDS_PER_EPOCH) == 1
    assert current_epoch(GENESIS_TIMESTAMP - 100) == 0
    assert epoch_end_timestamp(0) == GENESIS_TIMESTAMP + SECONDS_PER_EPOCH - 1
    assert current_epoch(epoch_end_timestamp(41)) == 41


def test_start_of_utc_year():
    assert start_of_utc_year(NOON) == 1735689600


class TestEvmCursor:
    """Tests for the timestamp cursor."""

    def test_no_cursor_fetches_from_start_of_year(self):
        cursor = EvmCursor()

        assert cursor.should_fetch(NOON)
        assert cursor.fetch_from(NOON) == 1735689600

    def test_same_day_is_not_due(self):
        cursor = EvmCursor(NOON)

        assert not cursor.should_fetch(NOON + 3600)

    def test_new_utc_day_is_due(self):
        """Test crossing UTC midnight triggers a fetch even within 24 hours."""
        cursor = EvmCursor(NOON + 11 * 3600)

        assert cursor.should_fetch(NOON + 13 * 3600)

    def test_more_than_a_day_is_due(self):
        cursor = EvmCursor(NOON)

        assert cursor.should_fetch(NOON + 86_401)

    def test_advance_is_monotonic(self):
        cursor = EvmCursor(NOON)

        cursor.advance(NOON - 500)
        assert cursor.last_fetched_timestamp == NOON

        cursor.advance(NOON + 500)
        assert cursor.last_fetched_timestamp == NOON + 500
        assert cursor.fetch_from(NOON + 1000) == NOON + 500


class TestEpochCursor:
    """Tests for the epoch cursor."""

    def test_first_run_initializes_without_backfill(self):
        """Test an uninitialized cursor jumps to the current epoch."""
        cursor = EpochCursor()
        calls = []

        result = cursor.run(lambda epoch: calls.append(epoch) or [], epoch_time(1000))

        assert result.initialized
        assert calls == []
        assert cursor.last_synced_epoch == 1000
        assert cursor.tracking_start_epoch == 1000

    def test_processes_pending_epochs_in_order(self):
        cursor = EpochCursor(last_synced_epoch=1000)
        calls = []

        def fetch(epoch):
            calls.append(epoch)
            return [make_event(hash=f"beacon_node-1_{epoch}")]

        result = cursor.run(fetch, epoch_time(1003))

        assert calls == [1001, 1002, 1003]
        assert result.processed_epochs == [1001, 1002, 1003]
        assert len(result.events) == 3
        assert cursor.last_synced_epoch == 1003

    def test_batch_is_capped(self):
        """Test one run processes at most one batch of epochs."""
        cursor = EpochCursor(last_synced_epoch=1000)

        result = cursor.run(lambda epoch: [], epoch_time(1000 + 3 * MAX_EPOCH_BATCH))

        assert len(result.processed_epochs) == MAX_EPOCH_BATCH
        assert cursor.last_synced_epoch == 1000 + MAX_EPOCH_BATCH

    def test_failure_commits_only_preceding_epochs(self):
        cursor = EpochCursor(last_synced_epoch=1000)

        def fetch(epoch):
            if epoch == 1003:
                raise ProviderError("boom")
            return []

        result = cursor.run(fetch, epoch_time(1010))

        assert result.processed_epochs == [1001, 1002]
        assert result.failed_epoch == 1003
        assert result.error == "boom"
        assert cursor.last_synced_epoch == 1002

    def test_never_passes_current_epoch(self):
        cursor = EpochCursor(last_synced_epoch=1000)

        result = cursor.run(lambda epoch: [], epoch_time(1000))

        assert result.processed_epochs == []
        assert cursor.last_synced_epoch == 1000

    @pytest.mark.parametrize("now_epoch", [1001, 1100, 1500])
    def test_monotonic(self, now_epoch):
        cursor = EpochCursor(last_synced_epoch=1000)

        cursor.run(lambda epoch: [], epoch_time(now_epoch))

        assert 1000 <= cursor.last_synced_epoch <= now_epoch

    def test_cursor_round_trip(self):
        cursors = SyncCursors(last_fetched_timestamp=NOON, last_synced_epoch=7, tracking_start_epoch=3)
        cursor = EpochCursor.from_cursors(cursors)
        cursor.last_synced_epoch = 9

        updated = cursor.to_cursors(cursors)

        assert updated.last_synced_epoch == 9
        assert updated.tracking_start_epoch == 3
        assert updated.last_fetched_timestamp == NOON
