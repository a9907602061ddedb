"""Core functionality including models, cursors, valuation, and exemption rules."""

from staking_rewards_tracker.core.cursor import EpochCursor, EvmCursor
from staking_rewards_tracker.core.errors import (
    DeletionError,
    InvalidInputError,
    NotFoundError,
    OperationInProgressError,
    ProviderError,
    RateLimitedError,
    RewardTrackerError,
    StoreWriteError,
    TransientNetworkError,
)
from staking_rewards_tracker.core.exemption import ExemptionPolicy, PolicyTable, is_exempt
from staking_rewards_tracker.core.models import (
    Currency,
    ExemptionStatus,
    HoldingStatus,
    LedgerEntry,
    PaymentStatus,
    PriceEntry,
    RewardEvent,
    SourceKind,
    SyncCursors,
    Tracker,
    Valuation,
)
from staking_rewards_tracker.core.valuation import valuate

__all__ = [
    "Currency",
    "DeletionError",
    "EpochCursor",
    "EvmCursor",
    "ExemptionPolicy",
    "ExemptionStatus",
    "HoldingStatus",
    "InvalidInputError",
    "LedgerEntry",
    "NotFoundError",
    "OperationInProgressError",
    "PaymentStatus",
    "PolicyTable",
    "PriceEntry",
    "ProviderError",
    "RateLimitedError",
    "RewardEvent",
    "RewardTrackerError",
    "SourceKind",
    "StoreWriteError",
    "SyncCursors",
    "Tracker",
    "TransientNetworkError",
    "Valuation",
    "is_exempt",
    "valuate",
]
