"""Tests for tax policy and tracker configuration loading."""

from decimal import Decimal

import pytest

from staking_rewards_tracker.core.errors import InvalidInputError
from staking_rewards_tracker.core.exemption import SECONDS_PER_DAY
from staking_rewards_tracker.data import build_policy_table, get_policy, list_countries, load_tax_policies, load_trackers


def test_load_tax_policies():
    """Test the packaged policy file."""
    config = load_tax_policies()

    assert "default" in config
    assert "Croatia" in config["countries"]


def test_croatia_policy():
    policy = get_policy("Croatia")

    assert policy.enabled
    assert policy.holding_period_years == 2
    assert policy.holding_period_seconds == 0
    assert policy.default_tax_rate == Decimal("24")


def test_unknown_country_is_disabled():
    policy = get_policy("Narnia")

    assert policy.country == "Narnia"
    assert not policy.enabled


def test_list_countries():
    countries = list_countries()

    assert "Croatia" in countries
    assert countries == sorted(countries)


def test_build_policy_table_from_config():
    table = build_policy_table(
        {
            "default": {"enabled": False},
            "countries": {"Portugal": {"enabled": True, "holding_period_days": 365, "default_tax_rate": 28}},
        }
    )

    assert table.get("portugal").holding_period_seconds == 365 * SECONDS_PER_DAY
    assert table.get("portugal").default_tax_rate == Decimal("28")


def test_load_trackers(tmp_path):
    path = tmp_path / "trackers.yaml"
    path.write_text(
        """
trackers:
  - id: node-1
    name: Home validator
    wallet_address: "0x1111111111111111111111111111111111111111"
    fee_recipient_address: "0x2222222222222222222222222222222222222222"
    country: Croatia
    validator_public_key: "0xabcdef"
  - id: node-2
    wallet_address: "0x3333333333333333333333333333333333333333"
    country: Germany
    tax_rate: 42
    currency: USD
"""
    )

    node_1, node_2 = load_trackers(path)

    assert node_1.tax_rate == Decimal("24")
    assert node_1.execution_address.startswith("0x2222")
    assert node_2.tax_rate == Decimal("42")
    assert node_2.currency == "USD"


def test_load_trackers_tax_rate_defaults_from_country(tmp_path):
    path = tmp_path / "trackers.yaml"
    path.write_text("trackers:\n  - id: de\n    wallet_address: '0x1'\n    country: Germany\n")

    (tracker,) = load_trackers(path)

    assert tracker.tax_rate == get_policy("Germany").default_tax_rate


def test_load_trackers_duplicate_ids(tmp_path):
    path = tmp_path / "trackers.yaml"
    path.write_text("trackers:\n  - id: a\n    wallet_address: '0x1'\n  - id: a\n    wallet_address: '0x2'\n")

    with pytest.raises(InvalidInputError, match="Duplicate"):
        load_trackers(path)


@pytest.mark.parametrize(
    "content",
    [
        "trackers: not-a-list\n",
        "- id: a\n",
        "trackers:\n  - id: a\n",
        "trackers: [\n",
    ],
)
def test_load_trackers_invalid(tmp_path, content):
    path = tmp_path / "trackers.yaml"
    path.write_text(content)

    with pytest.raises(InvalidInputError):
        load_trackers(path)
