"""Valued reward ledger of a tracker with tax and exemption totals."""

import logging
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from staking_rewards_tracker.core.exemption import ExemptionPolicy, is_exempt
from staking_rewards_tracker.core.models import (
    Currency,
    HoldingStatus,
    LedgerEntry,
    PaymentStatus,
    RewardEvent,
    Tracker,
)
from staking_rewards_tracker.core.valuation import valuate

if TYPE_CHECKING:
    from staking_rewards_tracker.pricing.index import PriceIndex

logger = logging.getLogger(__name__)


class MonthStatus(StrEnum):
    """Exemption mix of the rewards received in one month."""

    NONE = "none"
    TAXABLE = "taxable"
    EXEMPT = "exempt"
    MIXED = "mixed"


def _received(entry: LedgerEntry) -> datetime:
    return datetime.fromtimestamp(entry.event.timestamp_sec, tz=UTC)


class Ledger(BaseModel):
    """
    Valued rewards of one tracker at one point in time.

    Asset totals include every reward. Fiat totals only include rewards
    with a price, the others are listed in ``unvalued_hashes``.

    Attributes
    ----------
    tracker_id : str
        Tracker the ledger belongs to
    currency : Currency
        Fiat currency of all fiat amounts
    evaluated_at : int
        Unix seconds the exemption state was computed for
    entries : list[LedgerEntry]
        Valued rewards, newest first
    total_amount : Decimal
        Sum of reward amounts
    total_tax_asset : Decimal
        Tax due expressed in the reward asset
    total_fiat : Decimal
        Fiat value of valued rewards
    total_tax_fiat : Decimal
        Tax due in fiat for valued rewards
    unpaid_tax_fiat : Decimal
        Fiat tax of valued rewards not yet paid
    exempt_amount : Decimal
        Amount of exempt rewards still held
    exempt_fiat : Decimal
        Fiat value of exempt rewards still held
    unvalued_hashes : list[str]
        Rewards without a price
    warnings : list[str]
        Human readable notes, one per unvalued reward

    """

    tracker_id: str
    currency: Currency
    evaluated_at: int
    entries: list[LedgerEntry] = Field(default_factory=list)
    total_amount: Decimal = Decimal("0")
    total_tax_asset: Decimal = Decimal("0")
    total_fiat: Decimal = Decimal("0")
    total_tax_fiat: Decimal = Decimal("0")
    unpaid_tax_fiat: Decimal = Decimal("0")
    exempt_amount: Decimal = Decimal("0")
    exempt_fiat: Decimal = Decimal("0")
    unvalued_hashes: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def filter(self, year: int | None = None, month: int | None = None) -> list[LedgerEntry]:
        """
        Return entries received in a UTC year and optionally a month.

        Parameters
        ----------
        year : int | None
            Calendar year, all years if None
        month : int | None
            Month 1-12, all months if None

        Returns
        -------
        list[LedgerEntry]
            Matching entries, newest first

        """
        return [
            entry
            for entry in self.entries
            if (year is None or _received(entry).year == year) and (month is None or _received(entry).month == month)
        ]

    def monthly_status(self, year: int) -> dict[int, MonthStatus]:
        """
        Classify every month of ``year`` by the exemption of its rewards.

        Sold rewards count as taxable.

        Returns
        -------
        dict[int, MonthStatus]
            Status keyed by month 1-12

        """
        counts = {month: [0, 0] for month in range(1, 13)}
        for entry in self.filter(year):
            counts[_received(entry).month][1 if entry.exemption.exempt else 0] += 1

        statuses = {}
        for month, (taxable, exempt) in counts.items():
            if taxable and exempt:
                statuses[month] = MonthStatus.MIXED
            elif taxable:
                statuses[month] = MonthStatus.TAXABLE
            elif exempt:
                statuses[month] = MonthStatus.EXEMPT
            else:
                statuses[month] = MonthStatus.NONE
        return statuses

    def by_month(self, year: int) -> dict[int, Decimal]:
        """Return the amount received per month of ``year``."""
        amounts = {month: Decimal("0") for month in range(1, 13)}
        for entry in self.filter(year):
            amounts[_received(entry).month] += entry.event.amount
        return amounts


def build_ledger(
    tracker: Tracker,
    events: list[RewardEvent],
    price_index: "PriceIndex",
    policy: ExemptionPolicy,
    now: int,
) -> Ledger:
    """
    Value every reward of a tracker and compute its totals.

    Parameters
    ----------
    tracker : Tracker
        Tracker providing tax rate and currency
    events : list[RewardEvent]
        Canonical rewards, holding overrides already applied
    price_index : PriceIndex
        Historical prices
    policy : ExemptionPolicy
        Exemption policy of the tracker's country
    now : int
        Unix seconds to evaluate exemption at

    Returns
    -------
    Ledger
        Valued entries and totals

    """
    ledger = Ledger(tracker_id=tracker.id, currency=tracker.currency, evaluated_at=now)

    for event in sorted(events, key=lambda e: (-e.timestamp_sec, e.hash)):
        valuation = valuate(event, price_index, tracker.tax_rate, tracker.currency)
        exemption = is_exempt(event, policy, now)
        ledger.entries.append(LedgerEntry(event=event, valuation=valuation, exemption=exemption))

        ledger.total_amount += event.amount
        ledger.total_tax_asset += valuation.tax_asset

        if valuation.valued:
            ledger.total_fiat += valuation.fiat_value
            ledger.total_tax_fiat += valuation.tax_fiat
            if event.status == PaymentStatus.UNPAID:
                ledger.unpaid_tax_fiat += valuation.tax_fiat
        else:
            ledger.unvalued_hashes.append(event.hash)
            ledger.warnings.append(f"No price for reward {event.hash}, excluded from fiat totals")

        if exemption.exempt and event.holding_override != HoldingStatus.SOLD:
            ledger.exempt_amount += event.amount
            if valuation.valued:
                ledger.exempt_fiat += valuation.fiat_value

    if ledger.unvalued_hashes:
        logger.warning("%d rewards of %s have no %s price", len(ledger.unvalued_hashes), tracker.id, tracker.currency)
    return ledger
