"""Historical price index and the price oracle that maintains it."""

from staking_rewards_tracker.pricing.coingecko import CoinGeckoPricing
from staking_rewards_tracker.pricing.index import PriceIndex, update_price_index

__all__ = [
    "CoinGeckoPricing",
    "PriceIndex",
    "update_price_index",
]
