"""Adapters turning explorer and consensus-layer API data into reward events."""

from staking_rewards_tracker.ingestion.beaconcha import BeaconchaClient, ConsensusRewardsAdapter, ValidatorOverview
from staking_rewards_tracker.ingestion.etherscan import (
    EtherscanClient,
    ExplorerIngestionAdapter,
    IngestionResult,
    estimate_start_block,
)

__all__ = [
    "BeaconchaClient",
    "ConsensusRewardsAdapter",
    "EtherscanClient",
    "ExplorerIngestionAdapter",
    "IngestionResult",
    "ValidatorOverview",
    "estimate_start_block",
]
