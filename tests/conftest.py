"""Pytest configuration for staking-rewards-tracker tests."""

from decimal import Decimal

import pytest

from staking_rewards_tracker.core.models import PriceEntry, RewardEvent, SourceKind, Tracker
from staking_rewards_tracker.core.reconciliation import ReconciliationEngine
from staking_rewards_tracker.pricing.index import PriceIndex
from staking_rewards_tracker.storage.memory import InMemoryLocalCache, InMemoryOverrideStore, InMemoryRemoteStore

WALLET = "0x1111111111111111111111111111111111111111"
FEE_RECIPIENT = "0x2222222222222222222222222222222222abcdef"

# 2025-01-15 12:00:00 UTC
JAN_15_2025 = 1736942400


def make_event(
    hash: str = "0xabc",
    timestamp_sec: int = JAN_15_2025,
    amount: str = "0.05",
    source_kind: SourceKind = SourceKind.DIRECT_TRANSFER,
    **kwargs,
) -> RewardEvent:
    """Build a reward event with sensible defaults."""
    return RewardEvent(
        hash=hash,
        timestamp_sec=timestamp_sec,
        amount=Decimal(amount),
        source_kind=source_kind,
        **kwargs,
    )


@pytest.fixture
def tracker():
    """Croatian tracker with separate fee recipient and validator key."""
    return Tracker(
        id="node-1",
        name="Home validator",
        wallet_address=WALLET,
        fee_recipient_address=FEE_RECIPIENT,
        country="Croatia",
        tax_rate=Decimal("24"),
        validator_public_key="0x" + "ab" * 48,
    )


@pytest.fixture
def price_index():
    """Price index covering mid January 2025."""
    return PriceIndex(
        [
            PriceEntry(date_key="2025-01-14", fiat_per_unit={"eur": Decimal("3000"), "usd": Decimal("3100")}),
            PriceEntry(date_key="2025-01-15", fiat_per_unit={"eur": Decimal("3200"), "usd": Decimal("3300")}),
        ]
    )


@pytest.fixture
def local_cache():
    return InMemoryLocalCache()


@pytest.fixture
def remote_store():
    return InMemoryRemoteStore()


@pytest.fixture
def override_store():
    return InMemoryOverrideStore()


@pytest.fixture
def engine(local_cache, remote_store, override_store):
    """Reconciliation engine over in-memory stores."""
    return ReconciliationEngine(local_cache, remote_store, override_store)
