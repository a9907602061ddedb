"""Tests for the reconciliation merge and the engine's user actions."""

from decimal import Decimal

import pytest
from conftest import JAN_15_2025, make_event

from staking_rewards_tracker.core.errors import DeletionError, NotFoundError, StoreWriteError
from staking_rewards_tracker.core.models import HoldingStatus, PaymentStatus, SourceKind
from staking_rewards_tracker.core.reconciliation import apply_overrides, merge


class TestMerge:
    """Tests for the three-way merge."""

    def test_duplicate_hash_across_sources_yields_one_record(self):
        """Test 0xabc seen locally, remotely and freshly appears once."""
        local = [make_event("0xabc")]
        remote = [make_event("0xabc")]
        fresh = [make_event("0xabc"), make_event("0xdef", timestamp_sec=JAN_15_2025 + 60)]

        merged = merge(local, remote, fresh)

        assert [e.hash for e in merged] == ["0xdef", "0xabc"]

    def test_remote_paid_overrides_local_unpaid(self):
        """Test remote settlement state wins over the local copy."""
        local = [make_event("0xabc")]
        remote = [make_event("0xabc", status=PaymentStatus.PAID, settlement_ref="0xswap")]

        (merged,) = merge(local, remote, [])

        assert merged.status == PaymentStatus.PAID
        assert merged.settlement_ref == "0xswap"

    def test_economic_fields_keep_first_written_value(self):
        """Test amount and timestamp from local win over remote and fresh."""
        local = [make_event("0xabc", amount="1.0")]
        remote = [make_event("0xabc", amount="2.0", timestamp_sec=JAN_15_2025 + 1)]
        fresh = [make_event("0xabc", amount="3.0", source_kind=SourceKind.INTERNAL_TRANSFER)]

        (merged,) = merge(local, remote, fresh)

        assert merged.amount == Decimal("1.0")
        assert merged.timestamp_sec == JAN_15_2025
        assert merged.source_kind == SourceKind.DIRECT_TRANSFER

    def test_remote_economic_fields_win_over_fresh(self):
        remote = [make_event("0xabc", amount="2.0")]
        fresh = [make_event("0xabc", amount="3.0")]

        (merged,) = merge([], remote, fresh)

        assert merged.amount == Decimal("2.0")

    def test_holding_override_only_from_local(self):
        """Test remote and fresh records never carry a holding override in."""
        local = [make_event("0x1", holding_override=HoldingStatus.SOLD)]
        remote = [make_event("0x2", holding_override=HoldingStatus.SOLD)]
        fresh = [make_event("0x3", timestamp_sec=JAN_15_2025 - 1, holding_override=HoldingStatus.SOLD)]

        merged = {e.hash: e for e in merge(local, remote, fresh)}

        assert merged["0x1"].holding_override == HoldingStatus.SOLD
        assert merged["0x2"].holding_override is None
        assert merged["0x3"].holding_override is None

    def test_fresh_events_never_carry_settlement(self):
        fresh = [make_event("0xabc", status=PaymentStatus.PAID, settlement_ref="0xswap")]

        (merged,) = merge([], [], fresh)

        assert merged.status == PaymentStatus.UNPAID
        assert merged.settlement_ref is None

    def test_sorted_newest_first_with_hash_ties(self):
        events = [
            make_event("0xb", timestamp_sec=100),
            make_event("0xa", timestamp_sec=100),
            make_event("0xc", timestamp_sec=200),
        ]

        merged = merge(events, [], [])

        assert [e.hash for e in merged] == ["0xc", "0xa", "0xb"]

    def test_idempotent(self):
        """Test merging the output again with the same inputs changes nothing."""
        local = [make_event("0x1"), make_event("0x2", timestamp_sec=JAN_15_2025 - 10)]
        remote = [
            make_event("0x2", timestamp_sec=JAN_15_2025 - 10, status=PaymentStatus.PAID, settlement_ref="0xs"),
            make_event("0x3", timestamp_sec=JAN_15_2025 - 20),
        ]
        fresh = [make_event("0x1"), make_event("0x4", timestamp_sec=JAN_15_2025 + 10)]

        once = merge(local, remote, fresh)
        twice = merge(once, remote, fresh)

        assert once == twice

    def test_hashes_unique(self):
        events = [make_event(f"0x{i % 3}") for i in range(10)]

        merged = merge(events, events, events)

        assert len({e.hash for e in merged}) == len(merged) == 3


def test_apply_overrides():
    """Test holding overrides are layered by hash."""
    events = [make_event("0x1"), make_event("0x2")]

    result = apply_overrides(events, {"0x2": HoldingStatus.SOLD})

    assert result[0].holding_override is None
    assert result[1].holding_override == HoldingStatus.SOLD


class TestReconciliationEngine:
    """Tests for the stateful engine over in-memory stores."""

    def test_reconcile_replaces_local_snapshot(self, engine, local_cache, remote_store):
        result = engine.reconcile("node-1", [make_event("0xabc")])

        assert [e.hash for e in result.events] == ["0xabc"]
        assert result.new_hashes == ["0xabc"]
        assert [e.hash for e in local_cache.get_all("node-1")] == ["0xabc"]
        # Reconciliation never writes the remote store
        assert remote_store.get_delta("node-1") == []

    def test_reconcile_pulls_remote_settlement(self, engine, remote_store):
        engine.reconcile("node-1", [make_event("0xabc")])
        remote_store.upsert_batch("node-1", [make_event("0xabc")])
        remote_store.update_status("node-1", "0xabc", PaymentStatus.PAID, "0xswap")

        result = engine.reconcile("node-1", [], remote_since=JAN_15_2025 - 1)

        assert result.events[0].status == PaymentStatus.PAID
        assert result.new_hashes == []

    def test_empty_local_restores_full_remote_history(self, engine, remote_store):
        """Test a cleared cache reads the whole remote store despite remote_since."""
        remote_store.upsert_batch("node-1", [make_event("0xold", timestamp_sec=1000)])

        result = engine.reconcile("node-1", [], remote_since=JAN_15_2025)

        assert [e.hash for e in result.events] == ["0xold"]

    def test_remote_read_failure_degrades(self, engine, remote_store, monkeypatch):
        def fail(*args, **kwargs):
            raise StoreWriteError("remote offline")

        monkeypatch.setattr(remote_store, "get_delta", fail)

        result = engine.reconcile("node-1", [make_event("0xabc")])

        assert [e.hash for e in result.events] == ["0xabc"]
        assert any("remote offline" in w for w in result.warnings)

    def test_reconcile_layers_overrides(self, engine, override_store):
        override_store.set("node-1", "0xabc", HoldingStatus.SOLD)

        result = engine.reconcile("node-1", [make_event("0xabc")])

        assert result.events[0].holding_override == HoldingStatus.SOLD

    def test_mark_paid_updates_both_stores(self, engine, local_cache, remote_store):
        engine.reconcile("node-1", [make_event("0xabc")])
        remote_store.upsert_batch("node-1", [make_event("0xabc")])

        warnings = engine.mark_paid("node-1", "0xabc", "0xswap")

        assert warnings == []
        assert local_cache.get_one("node-1", "0xabc").status == PaymentStatus.PAID
        (remote,) = remote_store.get_delta("node-1")
        assert remote.status == PaymentStatus.PAID
        assert remote.settlement_ref == "0xswap"

    def test_mark_paid_uploads_missing_remote_document(self, engine, remote_store):
        engine.reconcile("node-1", [make_event("0xabc")])

        engine.mark_paid("node-1", "0xabc", "0xswap")

        (remote,) = remote_store.get_delta("node-1")
        assert remote.status == PaymentStatus.PAID

    def test_mark_paid_remote_failure_keeps_local(self, engine, local_cache, remote_store, monkeypatch):
        engine.reconcile("node-1", [make_event("0xabc")])

        def fail(*args, **kwargs):
            raise StoreWriteError("quota exceeded")

        monkeypatch.setattr(remote_store, "update_status", fail)

        warnings = engine.mark_paid("node-1", "0xabc", "0xswap")

        assert len(warnings) == 1
        assert local_cache.get_one("node-1", "0xabc").status == PaymentStatus.PAID

    def test_mark_unpaid_clears_settlement(self, engine, local_cache):
        engine.reconcile("node-1", [make_event("0xabc")])
        engine.mark_paid("node-1", "0xabc", "0xswap")

        engine.mark_unpaid("node-1", "0xabc")

        event = local_cache.get_one("node-1", "0xabc")
        assert event.status == PaymentStatus.UNPAID
        assert event.settlement_ref is None

    def test_mark_paid_unknown_hash(self, engine):
        with pytest.raises(NotFoundError):
            engine.mark_paid("node-1", "0xmissing")

    def test_set_holding_survives_reconcile(self, engine):
        engine.reconcile("node-1", [make_event("0xabc")])

        engine.set_holding("node-1", "0xabc", HoldingStatus.SOLD)
        result = engine.reconcile("node-1", [make_event("0xabc")])

        assert result.events[0].holding_override == HoldingStatus.SOLD

    def test_mark_sold_in_range(self, engine, override_store):
        # 2024-03-10, 2024-06-10, 2025-01-15
        fresh = [
            make_event("0xmar", timestamp_sec=1710072000),
            make_event("0xjun", timestamp_sec=1718020800),
            make_event("0xjan", timestamp_sec=JAN_15_2025),
        ]
        engine.reconcile("node-1", fresh)

        marked = engine.mark_sold_in_range("node-1", 2024, start_month=1, end_month=4)

        assert marked == 1
        assert override_store.get_all("node-1") == {"0xmar": HoldingStatus.SOLD}

    def test_mark_sold_in_range_rejects_bad_months(self, engine):
        with pytest.raises(ValueError):
            engine.mark_sold_in_range("node-1", 2024, start_month=6, end_month=2)

    def test_delete_tracker_events(self, engine, local_cache, remote_store, override_store):
        engine.reconcile("node-1", [make_event("0xabc")])
        remote_store.upsert_batch("node-1", [make_event("0xabc")])
        engine.set_holding("node-1", "0xabc", HoldingStatus.SOLD)

        engine.delete_tracker_events("node-1")

        assert local_cache.get_all("node-1") == []
        assert remote_store.get_delta("node-1") == []
        assert override_store.get_all("node-1") == {}

    def test_delete_partial_failure(self, engine, local_cache, override_store, remote_store, monkeypatch):
        """Test a failing store is reported while the others are still cleared."""
        engine.reconcile("node-1", [make_event("0xabc")])
        engine.set_holding("node-1", "0xabc", HoldingStatus.SOLD)

        def fail(tracker_id):
            raise StoreWriteError("permission denied")

        monkeypatch.setattr(remote_store, "delete_all", fail)

        with pytest.raises(DeletionError) as exc_info:
            engine.delete_tracker_events("node-1")

        assert list(exc_info.value.failures) == ["remote"]
        assert local_cache.get_all("node-1") == []
        assert override_store.get_all("node-1") == {}
