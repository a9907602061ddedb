"""Date-keyed historical price table for the reward asset."""

import json
import logging
from collections.abc import Iterator
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import httpx

from staking_rewards_tracker.core.errors import InvalidInputError, ProviderError, RewardTrackerError
from staking_rewards_tracker.core.models import Currency, PriceEntry
from staking_rewards_tracker.net.payload import json_object
from staking_rewards_tracker.storage.files import write_json_atomic

logger = logging.getLogger(__name__)


class PriceIndex:
    """
    Read-mostly table of daily prices.

    Entries are immutable once published: a date can be added once, and
    publishing a different price for an existing date is rejected.

    Parameters
    ----------
    entries : list[PriceEntry] | None
        Initial entries

    """

    def __init__(self, entries: list[PriceEntry] | None = None) -> None:
        self._entries: dict[str, PriceEntry] = {}
        for entry in entries or []:
            self.publish(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, date_key: object) -> bool:
        return date_key in self._entries

    def __iter__(self) -> Iterator[PriceEntry]:
        return iter(self._entries[key] for key in sorted(self._entries))

    def get(self, date_key: str) -> PriceEntry | None:
        """Return the entry for ``date_key`` if published."""
        return self._entries.get(date_key)

    def lookup(self, date_key: str, currency: Currency | str) -> Decimal | None:
        """
        Return the price for a date in a currency.

        Parameters
        ----------
        date_key : str
            UTC date key
        currency : Currency | str
            Fiat currency

        Returns
        -------
        Decimal | None
            Price per unit, None when the date or currency is missing

        """
        entry = self._entries.get(date_key)
        if entry is None:
            return None
        return entry.price_in(currency)

    def publish(self, entry: PriceEntry) -> bool:
        """
        Add an entry.

        Parameters
        ----------
        entry : PriceEntry
            Entry to add

        Returns
        -------
        bool
            True if added, False if an identical entry already existed

        Raises
        ------
        InvalidInputError
            If a different entry is already published for the date

        """
        existing = self._entries.get(entry.date_key)
        if existing is not None:
            if existing.fiat_per_unit == entry.fiat_per_unit:
                return False
            msg = f"Price for {entry.date_key} already published with different values"
            raise InvalidInputError(msg)
        self._entries[entry.date_key] = entry
        return True

    def missing_dates(self, start: date, end: date) -> list[str]:
        """Return date keys in ``[start, end]`` with no published entry."""
        missing = []
        day = start
        while day <= end:
            key = day.isoformat()
            if key not in self._entries:
                missing.append(key)
            day += timedelta(days=1)
        return missing

    def to_dict(self) -> dict[str, dict[str, str]]:
        """Serialize to the published ``{date_key: {currency: price}}`` shape."""
        return {
            entry.date_key: {currency: str(price) for currency, price in sorted(entry.fiat_per_unit.items())}
            for entry in self
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PriceIndex":
        """
        Build an index from the published JSON shape.

        Malformed rows are skipped with a warning instead of failing the
        whole index.

        Parameters
        ----------
        data : dict[str, Any]
            ``{"2025-01-01": {"eur": 3200.5, "usd": 3350.1}, ...}``

        Returns
        -------
        PriceIndex
            Parsed index

        """
        if not isinstance(data, dict):
            msg = f"Price data must be an object, got {type(data).__name__}"
            raise InvalidInputError(msg)

        index = cls()
        for date_key, prices in data.items():
            entry = _parse_entry(date_key, prices)
            if entry is None:
                logger.warning("Skipping malformed price row for %s", date_key)
                continue
            index.publish(entry)
        return index

    @classmethod
    def load(cls, path: Path) -> "PriceIndex":
        """Load an index from a JSON file; a missing file yields an empty index."""
        if not path.exists():
            logger.debug("Price file %s does not exist, starting empty", path)
            return cls()
        with open(path, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                msg = f"Invalid price file {path}: {e}"
                raise InvalidInputError(msg) from e
        return cls.from_dict(data)

    def save(self, path: Path) -> None:
        """Write the index to ``path`` atomically."""
        write_json_atomic(path, self.to_dict())

    @classmethod
    def fetch(cls, url: str, client: httpx.Client | None = None, timeout: float = 30.0) -> "PriceIndex":
        """
        Download a published price index.

        Parameters
        ----------
        url : str
            URL of the JSON document
        client : httpx.Client | None
            HTTP client, a temporary one is created if None
        timeout : float
            Request timeout in seconds

        Returns
        -------
        PriceIndex
            Parsed index

        Raises
        ------
        ProviderError
            If the download fails or the body is not a JSON object

        """
        owns_client = client is None
        client = client or httpx.Client(timeout=timeout)
        try:
            response = client.get(url)
            response.raise_for_status()
            return cls.from_dict(json_object(response, f"Price index {url}"))
        except httpx.HTTPError as e:
            msg = f"Failed to fetch price index from {url}: {e}"
            raise ProviderError(msg) from e
        finally:
            if owns_client:
                client.close()


def _parse_entry(date_key: str, prices: Any) -> PriceEntry | None:
    if not isinstance(prices, dict):
        return None
    try:
        fiat_per_unit = {
            str(currency).lower(): Decimal(str(value)) for currency, value in prices.items() if value is not None
        }
        return PriceEntry(date_key=date_key, fiat_per_unit=fiat_per_unit)
    except (InvalidOperation, ValueError):
        return None


def update_price_index(
    index: PriceIndex,
    oracle: Any,
    start: date,
    end: date,
    currencies: tuple[Currency, ...] = (Currency.EUR, Currency.USD),
) -> list[str]:
    """
    Fill dates missing from ``index`` using a price oracle.

    Dates already published are never refetched. A date the oracle cannot
    price is logged and skipped so one gap does not stop the backfill.

    Parameters
    ----------
    index : PriceIndex
        Index to extend in place
    oracle : Any
        Object with ``get_price_entry(date_key, currencies) -> PriceEntry``
    start : date
        First date (inclusive)
    end : date
        Last date (inclusive)
    currencies : tuple[Currency, ...]
        Currencies to request

    Returns
    -------
    list[str]
        Date keys that were added

    """
    added = []
    for date_key in index.missing_dates(start, end):
        try:
            entry = oracle.get_price_entry(date_key, currencies)
        except RewardTrackerError as e:
            logger.warning("Could not fetch price for %s: %s", date_key, e)
            continue
        if index.publish(entry):
            added.append(date_key)
            logger.info("Published price for %s", date_key)
    return added
