"""CoinGecko price oracle for historical reward asset prices."""

import logging
import time
from collections.abc import Callable
from datetime import date
from decimal import Decimal, InvalidOperation

import httpx

from staking_rewards_tracker.core.errors import NotFoundError, ProviderError, RateLimitedError, TransientNetworkError
from staking_rewards_tracker.core.models import Currency, PriceEntry
from staking_rewards_tracker.net.payload import json_object
from staking_rewards_tracker.net.retry import RateLimiter, RetryConfig, call_with_backoff

logger = logging.getLogger(__name__)


class CoinGeckoPricing:
    """
    Fetches daily historical prices from the CoinGecko API.

    CoinGecko's public tier allows roughly 30 requests per minute, so every
    request waits on the client's own rate limiter and HTTP 429 responses are
    retried with capped exponential backoff.

    Parameters
    ----------
    api_key : str | None
        Demo API key sent as ``x-cg-demo-api-key``
    coin_id : str
        CoinGecko coin identifier
    base_url : str
        API base URL
    min_interval : float
        Minimum seconds between requests
    retry_config : RetryConfig | None
        Backoff settings for rate-limited responses
    client : httpx.Client | None
        HTTP client, created if None
    sleep : Callable[[float], None]
        Sleep function used by the limiter and backoff

    """

    BASE_URL = "https://api.coingecko.com/api/v3"

    def __init__(
        self,
        api_key: str | None = None,
        coin_id: str = "ethereum",
        base_url: str = BASE_URL,
        min_interval: float = 2.1,
        retry_config: RetryConfig | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.coin_id = coin_id
        self.base_url = base_url
        self.retry_config = retry_config or RetryConfig(max_retries=3, base_delay=15.0, max_delay=60.0)
        self.client = client or httpx.Client(timeout=30.0)
        self._sleep = sleep
        self.rate_limiter = RateLimiter(min_interval, sleep=sleep)

    def get_price_entry(
        self,
        date_key: str,
        currencies: tuple[Currency, ...] = (Currency.EUR, Currency.USD),
    ) -> PriceEntry:
        """
        Fetch the price of the coin on a UTC date.

        Parameters
        ----------
        date_key : str
            Date in ``YYYY-MM-DD`` format
        currencies : tuple[Currency, ...]
            Currencies to extract from the response

        Returns
        -------
        PriceEntry
            Prices for the date

        Raises
        ------
        NotFoundError
            If CoinGecko has no market data for that date
        ProviderError
            If the request fails or stays rate limited

        """
        payload = call_with_backoff(
            lambda: self._fetch_history(date_key),
            self.retry_config,
            sleep=self._sleep,
            label=f"CoinGecko history {date_key}",
        )

        market_data = payload.get("market_data")
        current_price = market_data.get("current_price") if isinstance(market_data, dict) else None
        if not isinstance(current_price, dict):
            current_price = {}
        fiat_per_unit = {}
        for currency in currencies:
            price = _to_price(current_price.get(str(currency).lower()))
            if price is not None:
                fiat_per_unit[str(currency).lower()] = price

        if not fiat_per_unit:
            msg = f"No {self.coin_id} market data on {date_key}"
            raise NotFoundError(msg)

        return PriceEntry(date_key=date_key, fiat_per_unit=fiat_per_unit)

    def get_price(self, date_key: str, currency: Currency = Currency.EUR) -> Decimal:
        """Fetch a single price for a date."""
        entry = self.get_price_entry(date_key, (currency,))
        price = entry.price_in(currency)
        if price is None:
            msg = f"No {currency} price for {date_key}"
            raise NotFoundError(msg)
        return price

    def _fetch_history(self, date_key: str) -> dict:
        """
        Perform one rate-limited history request.

        Parameters
        ----------
        date_key : str
            Date in ``YYYY-MM-DD`` format

        Returns
        -------
        dict
            Raw API response

        """
        # CoinGecko expects DD-MM-YYYY
        day = date.fromisoformat(date_key)
        params = {"date": day.strftime("%d-%m-%Y"), "localization": "false"}
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key

        self.rate_limiter.wait()
        try:
            url = f"{self.base_url}/coins/{self.coin_id}/history"
            response = self.client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            msg = f"Request timeout: {e}"
            raise TransientNetworkError(msg) from e
        except httpx.HTTPError as e:
            msg = f"HTTP request failed: {e}"
            raise TransientNetworkError(msg) from e

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitedError(
                "CoinGecko rate limit reached",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code == 404:
            msg = f"Unknown coin {self.coin_id}"
            raise NotFoundError(msg)
        if response.is_error:
            msg = f"HTTP error {response.status_code}: {response.text[:200]}"
            raise ProviderError(msg)

        return json_object(response, "CoinGecko")

    def close(self) -> None:
        """Close HTTP client."""
        self.client.close()

    def __enter__(self) -> "CoinGeckoPricing":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()


def _to_price(raw: object) -> Decimal | None:
    """Parse a positive price, None for missing or malformed values."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        price = Decimal(str(raw))
    except InvalidOperation:
        logger.debug("Skipping unparsable price %r", raw)
        return None
    return price if price.is_finite() and price > 0 else None
