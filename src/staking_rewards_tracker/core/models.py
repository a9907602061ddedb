"""Data models for reward events, trackers, prices, and ledger state."""

from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SourceKind(StrEnum):
    """Where an incoming transfer was observed."""

    DIRECT_TRANSFER = "direct_transfer"
    INTERNAL_TRANSFER = "internal_transfer"
    CONSENSUS_WITHDRAWAL = "consensus_withdrawal"
    CONSENSUS_REWARD = "consensus_reward"


class PaymentStatus(StrEnum):
    """Whether the tax due on a reward has been settled."""

    UNPAID = "unpaid"
    PAID = "paid"


class HoldingStatus(StrEnum):
    """User-set holding state of a reward."""

    HOLDING = "holding"
    SOLD = "sold"


class Currency(StrEnum):
    """Fiat currencies a tracker can report in."""

    EUR = "EUR"
    USD = "USD"


class RewardEvent(BaseModel):
    """
    One incoming transfer credited to a tracked address.

    Attributes
    ----------
    hash : str
        Merge key. Native transaction hash, or a synthesized key for sources
        without one (e.g. ``beacon_{tracker_id}_{epoch}``)
    timestamp_sec : int
        Unix seconds of the economic event
    amount : Decimal
        Quantity of the reward asset, already normalized from wei/gwei
    source_kind : SourceKind
        Feed the transfer was ingested from
    status : PaymentStatus
        Tax settlement state
    settlement_ref : str | None
        Hash of the settling swap transaction, only set when paid
    holding_override : HoldingStatus | None
        Local holding state layered on top of the canonical record

    """

    model_config = ConfigDict(frozen=True)

    hash: str = Field(min_length=1)
    timestamp_sec: int = Field(ge=0)
    amount: Decimal = Field(ge=0)
    source_kind: SourceKind
    status: PaymentStatus = PaymentStatus.UNPAID
    settlement_ref: str | None = None
    holding_override: HoldingStatus | None = None

    @model_validator(mode="after")
    def _settlement_requires_paid(self) -> "RewardEvent":
        if self.settlement_ref and self.status != PaymentStatus.PAID:
            msg = f"settlement_ref set on unpaid event {self.hash}"
            raise ValueError(msg)
        return self


class SyncCursors(BaseModel):
    """
    Per-tracker forward-only progress markers.

    Attributes
    ----------
    last_fetched_timestamp : int | None
        Unix seconds of the last successful explorer ingestion
    last_synced_epoch : int | None
        Last consensus-layer epoch whose rewards were processed
    tracking_start_epoch : int | None
        Epoch at which consensus-layer tracking began

    """

    last_fetched_timestamp: int | None = None
    last_synced_epoch: int | None = None
    tracking_start_epoch: int | None = None


class Tracker(BaseModel):
    """
    One tracked address configuration.

    Attributes
    ----------
    id : str
        Tracker identifier, used in synthesized event hashes
    name : str
        Display name
    wallet_address : str
        Withdrawal address receiving consensus-layer withdrawals
    fee_recipient_address : str | None
        Separate execution-layer fee recipient, defaults to wallet_address
    country : str
        Country whose tax policy applies
    tax_rate : Decimal
        Income tax rate in percent
    currency : Currency
        Reporting currency
    validator_public_key : str | None
        Validator key for consensus-layer reward tracking
    cursors : SyncCursors
        Incremental sync progress

    """

    id: str = Field(min_length=1)
    name: str = ""
    wallet_address: str
    fee_recipient_address: str | None = None
    country: str = "Croatia"
    tax_rate: Decimal = Field(default=Decimal("24"), ge=0, le=100)
    currency: Currency = Currency.EUR
    validator_public_key: str | None = None
    cursors: SyncCursors = Field(default_factory=SyncCursors)

    @field_validator("wallet_address")
    @classmethod
    def _require_address(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "wallet_address must not be empty"
            raise ValueError(msg)
        return value

    @field_validator("fee_recipient_address", "validator_public_key")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @property
    def execution_address(self) -> str:
        """Address execution-layer rewards are paid to."""
        return self.fee_recipient_address or self.wallet_address


class PriceEntry(BaseModel):
    """
    Historical price of the reward asset on one UTC calendar day.

    Attributes
    ----------
    date_key : str
        UTC date in ``YYYY-MM-DD`` format
    fiat_per_unit : dict[str, Decimal]
        Price per unit keyed by lowercase currency code (``eur``, ``usd``)

    """

    model_config = ConfigDict(frozen=True)

    date_key: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    fiat_per_unit: dict[str, Decimal]

    def price_in(self, currency: Currency | str) -> Decimal | None:
        """Return the price in ``currency`` or None when it was not published."""
        price = self.fiat_per_unit.get(str(currency).lower())
        if price is None or price <= 0:
            return None
        return price


class Valuation(BaseModel):
    """
    Fiat value and tax liability of a single reward.

    Attributes
    ----------
    fiat_value : Decimal
        Reward amount times price
    tax_fiat : Decimal
        Tax due in fiat
    tax_asset : Decimal
        Tax due expressed in the reward asset
    price : Decimal
        Price used, 0 when unvalued
    price_date_key : str | None
        Date whose price was used, None when unvalued
    used_fallback : bool
        True when the previous day's price was used
    valued : bool
        False when no price was found

    """

    fiat_value: Decimal
    tax_fiat: Decimal
    tax_asset: Decimal
    price: Decimal
    price_date_key: str | None = None
    used_fallback: bool = False
    valued: bool = True


class ExemptionStatus(BaseModel):
    """
    Capital-gains exemption state of a reward at a point in time.

    Attributes
    ----------
    exempt : bool
        Whether the reward is currently exempt
    progress_ratio : float
        Fraction of the holding period elapsed, clamped to [0, 1]
    exempt_since : int | None
        Unix seconds at which the reward becomes exempt, None when the
        policy never exempts it

    """

    exempt: bool
    progress_ratio: float = Field(ge=0.0, le=1.0)
    exempt_since: int | None = None


class LedgerEntry(BaseModel):
    """A canonical reward with its valuation and exemption state."""

    event: RewardEvent
    valuation: Valuation
    exemption: ExemptionStatus
