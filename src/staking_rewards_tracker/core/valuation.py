"""Fiat valuation and tax liability of reward events."""

import logging
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from staking_rewards_tracker.core.models import Currency, RewardEvent, Valuation

if TYPE_CHECKING:
    from staking_rewards_tracker.pricing.index import PriceIndex

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def date_key_for(timestamp_sec: int) -> str:
    """
    Return the UTC calendar date of a Unix timestamp as ``YYYY-MM-DD``.

    Local time is never used so that valuation does not depend on the
    timezone of whoever runs it.

    Parameters
    ----------
    timestamp_sec : int
        Unix seconds

    Returns
    -------
    str
        Date key

    """
    return datetime.fromtimestamp(timestamp_sec, tz=UTC).strftime("%Y-%m-%d")


def previous_date_key(date_key: str) -> str:
    """Return the date key one calendar day before ``date_key``."""
    day = date.fromisoformat(date_key)
    return (day - timedelta(days=1)).isoformat()


def valuate(
    event: RewardEvent,
    price_index: "PriceIndex",
    tax_rate_percent: Decimal,
    currency: Currency | str = Currency.EUR,
) -> Valuation:
    """
    Attach fiat value and tax liability to a reward.

    The price is looked up for the UTC date of the event. When that date is
    missing the previous day is tried exactly once. When both are missing
    the event is valued at zero and flagged ``valued=False``; this never
    raises.

    There is no ``now`` argument: a valuation depends only on the event's
    own date, so the evaluation time matters only for the exemption state
    that ``build_ledger`` derives next to it. ``currency`` picks which fiat
    price of the index is used.

    Parameters
    ----------
    event : RewardEvent
        Reward to value
    price_index : PriceIndex
        Historical prices keyed by date
    tax_rate_percent : Decimal
        Income tax rate in percent
    currency : Currency | str
        Fiat currency to value in

    Returns
    -------
    Valuation
        Fiat value, tax in fiat and tax in the reward asset

    """
    rate = Decimal(tax_rate_percent)
    tax_asset = event.amount * rate / HUNDRED

    key = date_key_for(event.timestamp_sec)
    price = price_index.lookup(key, currency)
    price_date_key = key
    used_fallback = False

    if price is None:
        price_date_key = previous_date_key(key)
        price = price_index.lookup(price_date_key, currency)
        used_fallback = True

    if price is None:
        logger.debug("No %s price for %s or the day before (%s)", currency, key, event.hash)
        return Valuation(
            fiat_value=Decimal("0"),
            tax_fiat=Decimal("0"),
            tax_asset=tax_asset,
            price=Decimal("0"),
            price_date_key=None,
            used_fallback=False,
            valued=False,
        )

    fiat_value = event.amount * price
    return Valuation(
        fiat_value=fiat_value,
        tax_fiat=fiat_value * rate / HUNDRED,
        tax_asset=tax_asset,
        price=price,
        price_date_key=price_date_key,
        used_fallback=used_fallback,
    )
