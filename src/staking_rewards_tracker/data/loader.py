"""Tax policy and tracker configuration loader."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from staking_rewards_tracker.core.errors import InvalidInputError
from staking_rewards_tracker.core.exemption import SECONDS_PER_DAY, ExemptionPolicy, PolicyTable
from staking_rewards_tracker.core.models import Tracker


def load_tax_policies(path: Path | None = None) -> dict[str, Any]:
    """
    Load raw exemption policy configuration from YAML.

    Parameters
    ----------
    path : Path | None
        Policy file, defaults to the packaged ``tax_policies.yaml``

    Returns
    -------
    dict[str, Any]
        Parsed configuration with ``default`` and ``countries`` keys

    """
    path = path or Path(__file__).parent / "tax_policies.yaml"
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _policy_from_config(country: str, config: dict[str, Any]) -> ExemptionPolicy:
    return ExemptionPolicy(
        country=country,
        enabled=bool(config.get("enabled", False)),
        holding_period_years=int(config.get("holding_period_years", 0)),
        holding_period_seconds=int(config.get("holding_period_days", 0)) * SECONDS_PER_DAY,
        default_tax_rate=Decimal(str(config.get("default_tax_rate", 0))),
        timezone=config.get("timezone", "UTC"),
    )


def build_policy_table(config: dict[str, Any]) -> PolicyTable:
    """
    Build a policy lookup table from parsed configuration.

    Parameters
    ----------
    config : dict[str, Any]
        Output of ``load_tax_policies``

    Returns
    -------
    PolicyTable
        Country-keyed policy table

    """
    policies = {
        country: _policy_from_config(country, settings or {})
        for country, settings in (config.get("countries") or {}).items()
    }
    default = _policy_from_config("default", config.get("default") or {})
    return PolicyTable(policies, default=default)


@lru_cache(maxsize=1)
def get_policy_table() -> PolicyTable:
    """Return the packaged policy table."""
    return build_policy_table(load_tax_policies())


def get_policy(country: str) -> ExemptionPolicy:
    """
    Get the exemption policy for a country.

    Parameters
    ----------
    country : str
        Country name

    Returns
    -------
    ExemptionPolicy
        Configured policy, or a disabled one for unknown countries

    """
    return get_policy_table().get(country)


def list_countries() -> list[str]:
    """Return all countries with a configured policy."""
    return get_policy_table().countries()


def load_trackers(path: Path) -> list[Tracker]:
    """
    Load tracker definitions from a YAML file.

    The file holds a ``trackers`` list; each item maps onto ``Tracker``
    fields. Missing tax rates default to the country's suggested rate.

    Parameters
    ----------
    path : Path
        Tracker configuration file

    Returns
    -------
    list[Tracker]
        Parsed trackers

    Raises
    ------
    InvalidInputError
        If the file is malformed or tracker ids are duplicated

    """
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            msg = f"Invalid YAML in {path}: {e}"
            raise InvalidInputError(msg) from e

    items = data.get("trackers") if isinstance(data, dict) else None
    if not isinstance(items, list):
        msg = f"{path} must contain a 'trackers' list"
        raise InvalidInputError(msg)

    trackers = []
    seen = set()
    for item in items:
        if not isinstance(item, dict):
            msg = f"Tracker entries in {path} must be mappings"
            raise InvalidInputError(msg)
        item = dict(item)
        if "tax_rate" not in item and "country" in item:
            item["tax_rate"] = get_policy(item["country"]).default_tax_rate
        try:
            tracker = Tracker.model_validate(item)
        except ValidationError as e:
            msg = f"Invalid tracker {item.get('id', '?')} in {path}: {e}"
            raise InvalidInputError(msg) from e
        if tracker.id in seen:
            msg = f"Duplicate tracker id {tracker.id} in {path}"
            raise InvalidInputError(msg)
        seen.add(tracker.id)
        trackers.append(tracker)
    return trackers
