"""Tests for capital-gains exemption policies."""

from decimal import Decimal

import pytest
from conftest import make_event

from staking_rewards_tracker.core.exemption import (
    SECONDS_PER_DAY,
    ExemptionPolicy,
    PolicyTable,
    add_calendar_years,
    is_exempt,
)
from staking_rewards_tracker.core.models import HoldingStatus
from staking_rewards_tracker.data import get_policy

# 2023-01-01 00:00:00 UTC
JAN_1_2023 = 1672531200
# 2025-01-01 00:00:00 UTC, 731 days later because of 2024-02-29
JAN_1_2025 = 1735689600
TWO_YEARS = JAN_1_2025 - JAN_1_2023


@pytest.fixture
def croatia():
    return ExemptionPolicy(
        country="Croatia", enabled=True, holding_period_years=2, default_tax_rate=Decimal("24")
    )


class TestAddCalendarYears:
    def test_same_date_two_years_later(self):
        assert add_calendar_years(JAN_1_2023, 2) == JAN_1_2025

    def test_leap_day_rolls_over_to_march_first(self):
        # 2024-02-29 12:00:00 UTC -> 2026-03-01 12:00:00 UTC
        assert add_calendar_years(1709208000, 2) == 1772366400

    def test_leap_day_to_leap_year(self):
        # 2024-02-29 -> 2028-02-29
        assert add_calendar_years(1709208000, 4) == 1709208000 + 1461 * SECONDS_PER_DAY

    def test_zero_years(self):
        assert add_calendar_years(JAN_1_2023 + 17, 0) == JAN_1_2023 + 17


class TestIsExempt:
    """Tests for the exemption rule."""

    def test_two_year_boundary(self, croatia):
        """Test a reward becomes exempt exactly two years after receipt."""
        event = make_event(timestamp_sec=JAN_1_2023)

        just_before = is_exempt(event, croatia, JAN_1_2023 + TWO_YEARS - 1)
        at_boundary = is_exempt(event, croatia, JAN_1_2023 + TWO_YEARS)

        assert not just_before.exempt
        assert just_before.progress_ratio < 1.0
        assert at_boundary.exempt
        assert at_boundary.progress_ratio == 1.0
        assert at_boundary.exempt_since == JAN_1_2023 + TWO_YEARS

    def test_period_spanning_leap_day_is_731_days(self):
        """Test the packaged Croatian policy waits two calendar years across 2024-02-29."""
        croatia = get_policy("Croatia")
        # 2024-01-01 00:00:00 UTC
        event = make_event(timestamp_sec=1704067200)

        after_730_days = is_exempt(event, croatia, 1704067200 + 730 * SECONDS_PER_DAY)
        last_second = is_exempt(event, croatia, 1767225599)
        new_year = is_exempt(event, croatia, 1767225600)

        assert not after_730_days.exempt
        assert not last_second.exempt
        assert new_year.exempt
        assert new_year.exempt_since == 1767225600

    def test_received_on_leap_day(self, croatia):
        event = make_event(timestamp_sec=1709208000)

        assert not is_exempt(event, croatia, 1772366399).exempt
        assert is_exempt(event, croatia, 1772366400).exempt

    def test_years_and_seconds_add_up(self):
        policy = ExemptionPolicy(
            country="Elsewhere", enabled=True, holding_period_years=1, holding_period_seconds=10 * SECONDS_PER_DAY
        )
        event = make_event(timestamp_sec=JAN_1_2023)

        status = is_exempt(event, policy, JAN_1_2023)

        # 2024-01-11 00:00:00 UTC
        assert status.exempt_since == 1704931200
        assert policy.describe_period() == "1 year + 10 days"

    def test_progress_ratio_midway(self, croatia):
        """Test progress is the elapsed fraction of the holding period."""
        event = make_event(timestamp_sec=JAN_1_2023)

        status = is_exempt(event, croatia, JAN_1_2023 + TWO_YEARS // 2)

        assert status.progress_ratio == pytest.approx(0.5)
        assert not status.exempt

    def test_progress_ratio_is_clamped(self, croatia):
        """Test progress stays within [0, 1]."""
        event = make_event(timestamp_sec=JAN_1_2023)

        assert is_exempt(event, croatia, JAN_1_2023 - 1000).progress_ratio == 0.0
        assert is_exempt(event, croatia, JAN_1_2023 + 10 * TWO_YEARS).progress_ratio == 1.0

    def test_sold_reward_is_never_exempt(self, croatia):
        """Test sold rewards lose the exemption."""
        event = make_event(timestamp_sec=JAN_1_2023, holding_override=HoldingStatus.SOLD)

        status = is_exempt(event, croatia, JAN_1_2023 + 3 * TWO_YEARS)

        assert not status.exempt
        assert status.exempt_since is None

    def test_disabled_policy(self):
        """Test disabled policies never exempt."""
        policy = ExemptionPolicy(country="Germany", enabled=False, holding_period_seconds=365 * SECONDS_PER_DAY)
        event = make_event(timestamp_sec=JAN_1_2023)

        status = is_exempt(event, policy, JAN_1_2023 + 5 * TWO_YEARS)

        assert not status.exempt
        assert status.progress_ratio == 0.0

    def test_pure(self, croatia):
        """Test identical inputs give identical results."""
        event = make_event(timestamp_sec=JAN_1_2023)
        now = JAN_1_2023 + 12345

        assert is_exempt(event, croatia, now) == is_exempt(event, croatia, now)


class TestPolicyTable:
    """Tests for the country lookup table."""

    def test_lookup_is_case_insensitive(self, croatia):
        table = PolicyTable({"Croatia": croatia})

        assert table.get("croatia") is croatia
        assert table.get(" CROATIA ") is croatia
        assert "Croatia" in table

    def test_unknown_country_gets_disabled_default(self, croatia):
        table = PolicyTable({"Croatia": croatia})

        policy = table.get("Atlantis")

        assert policy.country == "Atlantis"
        assert not policy.enabled
        assert "Atlantis" not in table

    def test_countries(self, croatia):
        table = PolicyTable({"Croatia": croatia, "Germany": ExemptionPolicy(country="Germany")})

        assert table.countries() == ["Croatia", "Germany"]
