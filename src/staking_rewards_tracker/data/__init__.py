"""Data loading and configuration management."""

from staking_rewards_tracker.data.loader import (
    build_policy_table,
    get_policy,
    get_policy_table,
    list_countries,
    load_tax_policies,
    load_trackers,
)

__all__ = [
    "build_policy_table",
    "get_policy",
    "get_policy_table",
    "list_countries",
    "load_tax_policies",
    "load_trackers",
]
