"""HTTP helpers shared by the API adapters: rate limiting, retry and payload decoding."""

from staking_rewards_tracker.net.payload import json_object, only_objects
from staking_rewards_tracker.net.retry import RateLimiter, RetryConfig, call_with_backoff

__all__ = [
    "RateLimiter",
    "RetryConfig",
    "call_with_backoff",
    "json_object",
    "only_objects",
]
