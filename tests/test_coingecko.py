"""Tests for the CoinGecko price oracle."""

from decimal import Decimal

import httpx
import pytest

from staking_rewards_tracker.core.errors import NotFoundError, ProviderError
from staking_rewards_tracker.core.models import Currency
from staking_rewards_tracker.net.retry import RetryConfig
from staking_rewards_tracker.pricing.coingecko import CoinGeckoPricing

HISTORY = {
    "id": "ethereum",
    "market_data": {"current_price": {"eur": 3201.55, "usd": 3312.4, "btc": 0.034}},
}


def make_pricing(handler, **kwargs) -> tuple[CoinGeckoPricing, list[float]]:
    sleeps: list[float] = []
    pricing = CoinGeckoPricing(
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=sleeps.append,
        **kwargs,
    )
    return pricing, sleeps


def test_get_price_entry():
    """Test request format and response parsing."""
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=HISTORY)

    pricing, _ = make_pricing(handler, api_key="demo-key")

    entry = pricing.get_price_entry("2025-01-15")

    assert entry.date_key == "2025-01-15"
    assert entry.fiat_per_unit == {"eur": Decimal("3201.55"), "usd": Decimal("3312.4")}
    (request,) = requests
    assert request.url.path == "/api/v3/coins/ethereum/history"
    assert request.url.params["date"] == "15-01-2025"
    assert request.url.params["localization"] == "false"
    assert request.headers["x-cg-demo-api-key"] == "demo-key"


def test_no_api_key_header_without_key():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=HISTORY)

    pricing, _ = make_pricing(handler)
    pricing.get_price("2025-01-15", Currency.USD)

    assert "x-cg-demo-api-key" not in requests[0].headers


def test_missing_market_data():
    pricing, _ = make_pricing(lambda request: httpx.Response(200, json={"id": "ethereum"}))

    with pytest.raises(NotFoundError):
        pricing.get_price_entry("2015-01-01")


def test_rate_limit_is_retried_with_backoff():
    """Test 429 responses back off and then succeed."""
    responses = iter([httpx.Response(429), httpx.Response(429), httpx.Response(200, json=HISTORY)])
    pricing, sleeps = make_pricing(
        lambda request: next(responses),
        retry_config=RetryConfig(max_retries=3, base_delay=15.0, max_delay=60.0),
    )

    price = pricing.get_price("2025-01-15")

    assert price == Decimal("3201.55")
    # Backoff sleeps, plus the rate limiter spacing between the three requests
    assert 15.0 in sleeps
    assert 30.0 in sleeps


def test_rate_limit_gives_up_after_max_retries():
    pricing, sleeps = make_pricing(
        lambda request: httpx.Response(429, headers={"retry-after": "5"}),
        retry_config=RetryConfig(max_retries=2, base_delay=1.0, max_delay=60.0),
    )

    with pytest.raises(ProviderError, match="rate limited"):
        pricing.get_price_entry("2025-01-15")


def test_server_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="oops")

    pricing, _ = make_pricing(handler)

    with pytest.raises(ProviderError):
        pricing.get_price_entry("2025-01-15")
    assert len(calls) == 1


def test_timeout_is_transient_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    pricing, _ = make_pricing(handler)

    with pytest.raises(ProviderError, match="timeout"):
        pricing.get_price_entry("2025-01-15")


def test_non_json_body_is_provider_error():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, text="<html>error code: 1020</html>")

    pricing, _ = make_pricing(handler)

    with pytest.raises(ProviderError, match="non-JSON"):
        pricing.get_price_entry("2025-01-15")
    assert len(requests) == 1


@pytest.mark.parametrize(
    "payload",
    [
        {"market_data": "n/a"},
        {"market_data": {"current_price": [3201.55]}},
        {"market_data": {"current_price": {"eur": "n/a", "usd": None}}},
        {"market_data": {"current_price": {"eur": True, "usd": -1}}},
    ],
)
def test_malformed_market_data_is_not_found(payload):
    pricing, _ = make_pricing(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(NotFoundError):
        pricing.get_price_entry("2025-01-15")


def test_unparsable_currency_is_dropped():
    payload = {"market_data": {"current_price": {"eur": 3201.55, "usd": "n/a"}}}
    pricing, _ = make_pricing(lambda request: httpx.Response(200, json=payload))

    entry = pricing.get_price_entry("2025-01-15")

    assert entry.fiat_per_unit == {"eur": Decimal("3201.55")}
