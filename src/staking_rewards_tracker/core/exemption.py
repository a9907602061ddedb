"""Capital-gains exemption policies and the eligibility rule that consumes them."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from staking_rewards_tracker.core.models import ExemptionStatus, HoldingStatus, RewardEvent

SECONDS_PER_DAY = 86_400


def add_calendar_years(timestamp_sec: int, years: int) -> int:
    """
    Add calendar years to a Unix timestamp in UTC.

    The same month, day and time of day ``years`` later. February 29th rolls
    over to March 1st when the target year has no leap day.
    """
    start = datetime.fromtimestamp(timestamp_sec, tz=UTC)
    try:
        shifted = start.replace(year=start.year + years)
    except ValueError:
        shifted = start.replace(year=start.year + years, month=2, day=28) + timedelta(days=1)
    return int(shifted.timestamp())


class ExemptionPolicy(BaseModel):
    """
    Capital-gains exemption rule of one jurisdiction.

    The holding period is ``holding_period_years`` calendar years plus
    ``holding_period_seconds``; a two-year period spans 731 days when it
    contains a February 29th.

    Attributes
    ----------
    country : str
        Country name as used in tracker configuration
    enabled : bool
        Whether rewards can become exempt at all
    holding_period_years : int
        Calendar years a reward must be held, counted in UTC
    holding_period_seconds : int
        Fixed duration added on top of the calendar years
    default_tax_rate : Decimal
        Suggested income tax rate in percent
    timezone : str
        IANA timezone used for display only

    """

    model_config = ConfigDict(frozen=True)

    country: str
    enabled: bool = False
    holding_period_years: int = Field(default=0, ge=0)
    holding_period_seconds: int = Field(default=0, ge=0)
    default_tax_rate: Decimal = Decimal("0")
    timezone: str = "UTC"

    def exempt_since(self, timestamp_sec: int) -> int:
        """Return the Unix seconds at which a reward received at ``timestamp_sec`` becomes exempt."""
        return add_calendar_years(timestamp_sec, self.holding_period_years) + self.holding_period_seconds

    def describe_period(self) -> str:
        parts = []
        if self.holding_period_years:
            years = self.holding_period_years
            parts.append(f"{years} year" if years == 1 else f"{years} years")
        if self.holding_period_seconds:
            parts.append(f"{self.holding_period_seconds // SECONDS_PER_DAY} days")
        return " + ".join(parts) or "none"


class PolicyTable:
    """
    Country-keyed lookup of exemption policies.

    Countries without an entry resolve to the default policy, which is
    disabled unless configured otherwise.

    Parameters
    ----------
    policies : dict[str, ExemptionPolicy]
        Policies keyed by country
    default : ExemptionPolicy | None
        Policy for unknown countries

    """

    def __init__(self, policies: dict[str, ExemptionPolicy], default: ExemptionPolicy | None = None) -> None:
        self._policies = {name.casefold(): policy for name, policy in policies.items()}
        self.default = default or ExemptionPolicy(country="default")

    def get(self, country: str) -> ExemptionPolicy:
        """Return the policy of ``country`` or a disabled policy named after it."""
        policy = self._policies.get(country.strip().casefold())
        if policy is None:
            return self.default.model_copy(update={"country": country})
        return policy

    def countries(self) -> list[str]:
        """Return configured country names."""
        return sorted(policy.country for policy in self._policies.values())

    def __contains__(self, country: object) -> bool:
        return isinstance(country, str) and country.strip().casefold() in self._policies


def is_exempt(event: RewardEvent, policy: ExemptionPolicy, now: int) -> ExemptionStatus:
    """
    Compute the capital-gains exemption state of a reward at ``now``.

    Depends only on the event's timestamp and holding override, the policy,
    and ``now``; identical inputs always give identical results.

    Parameters
    ----------
    event : RewardEvent
        Reward to evaluate
    policy : ExemptionPolicy
        Policy of the tracker's country
    now : int
        Evaluation time in Unix seconds

    Returns
    -------
    ExemptionStatus
        Exempt flag, elapsed fraction of the holding period, and the time the
        reward becomes exempt

    """
    if event.holding_override == HoldingStatus.SOLD or not policy.enabled:
        return ExemptionStatus(exempt=False, progress_ratio=0.0, exempt_since=None)

    exempt_since = policy.exempt_since(event.timestamp_sec)
    period = exempt_since - event.timestamp_sec
    if period == 0:
        return ExemptionStatus(exempt=now >= exempt_since, progress_ratio=1.0, exempt_since=exempt_since)

    ratio = (now - event.timestamp_sec) / period
    return ExemptionStatus(
        exempt=now >= exempt_since,
        progress_ratio=min(max(ratio, 0.0), 1.0),
        exempt_since=exempt_since,
    )
