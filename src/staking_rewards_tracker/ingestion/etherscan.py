"""Etherscan client and the explorer ingestion adapter built on it."""

import logging
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from pydantic import BaseModel, Field

from staking_rewards_tracker.core.errors import ProviderError, RateLimitedError, RewardTrackerError, TransientNetworkError
from staking_rewards_tracker.core.models import RewardEvent, SourceKind, Tracker
from staking_rewards_tracker.net.payload import json_object, only_objects
from staking_rewards_tracker.net.retry import RateLimiter, RetryConfig, call_with_backoff

logger = logging.getLogger(__name__)

# Mainnet genesis block timestamp and average block time, for start block estimates
ETHEREUM_GENESIS_TIMESTAMP = 1438269988
SECONDS_PER_BLOCK = 12

WEI_PER_ETH = Decimal(10) ** 18
GWEI_PER_ETH = Decimal(10) ** 9

EMPTY_RESULT_MESSAGES = ("no transactions found", "no records found", "no record")


def estimate_start_block(since: int) -> int:
    """Approximate the first block at or after ``since``."""
    return max(0, (since - ETHEREUM_GENESIS_TIMESTAMP) // SECONDS_PER_BLOCK)


class EtherscanClient:
    """
    Client for the Etherscan v2 account API.

    Parameters
    ----------
    api_key : str
        Etherscan API key
    chain_id : int
        EVM chain id (1 = Ethereum mainnet)
    base_url : str
        API base URL
    page_size : int
        Records requested per page
    max_pages : int
        Pages read per feed before stopping
    min_interval : float
        Minimum seconds between requests
    retry_config : RetryConfig | None
        Backoff settings for rate-limited responses
    client : httpx.Client | None
        HTTP client, created if None
    sleep : Callable[[float], None]
        Sleep function used by the limiter and backoff

    """

    BASE_URL = "https://api.etherscan.io/v2/api"

    def __init__(
        self,
        api_key: str,
        chain_id: int = 1,
        base_url: str = BASE_URL,
        page_size: int = 1000,
        max_pages: int = 10,
        min_interval: float = 0.25,
        retry_config: RetryConfig | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.chain_id = chain_id
        self.base_url = base_url
        self.page_size = page_size
        self.max_pages = max_pages
        self.retry_config = retry_config or RetryConfig()
        self.client = client or httpx.Client(timeout=30.0)
        self._sleep = sleep
        self.rate_limiter = RateLimiter(min_interval, sleep=sleep)

    def get_transactions(self, address: str, start_block: int = 0) -> list[dict[str, Any]]:
        """Fetch normal transactions of ``address``."""
        return self._get_pages("txlist", address, start_block)

    def get_internal_transactions(self, address: str, start_block: int = 0) -> list[dict[str, Any]]:
        """Fetch internal transactions of ``address``."""
        return self._get_pages("txlistinternal", address, start_block)

    def get_beacon_withdrawals(self, address: str, start_block: int = 0) -> list[dict[str, Any]]:
        """Fetch consensus-layer withdrawals credited to ``address``."""
        return self._get_pages("txsBeaconWithdrawal", address, start_block)

    def _get_pages(self, action: str, address: str, start_block: int) -> list[dict[str, Any]]:
        """
        Read every page of an account action.

        Parameters
        ----------
        action : str
            Etherscan account action
        address : str
            Account address
        start_block : int
            First block to include

        Returns
        -------
        list[dict[str, Any]]
            Raw records of all pages, oldest first

        Raises
        ------
        ProviderError
            If a page fails or stays rate limited

        """
        records: list[dict[str, Any]] = []
        for page in range(1, self.max_pages + 1):
            params = {
                "chainid": self.chain_id,
                "module": "account",
                "action": action,
                "address": address,
                "startblock": start_block,
                "endblock": 99999999,
                "page": page,
                "offset": self.page_size,
                "sort": "asc",
                "apikey": self.api_key,
            }
            batch = call_with_backoff(
                lambda: self._request(params),
                self.retry_config,
                sleep=self._sleep,
                label=f"Etherscan {action} page {page}",
            )
            records.extend(only_objects(batch, f"Etherscan {action}"))
            if len(batch) < self.page_size:
                break
        else:
            logger.warning("Etherscan %s for %s hit the %d page limit", action, address, self.max_pages)

        return records

    def _request(self, params: dict[str, Any]) -> list[Any]:
        self.rate_limiter.wait()
        try:
            response = self.client.get(self.base_url, params=params)
        except httpx.TimeoutException as e:
            msg = f"Request timeout: {e}"
            raise TransientNetworkError(msg) from e
        except httpx.HTTPError as e:
            msg = f"HTTP request failed: {e}"
            raise TransientNetworkError(msg) from e

        if response.status_code == 429:
            raise RateLimitedError("Etherscan rate limit reached")
        if response.is_error:
            msg = f"HTTP error {response.status_code}: {response.text[:200]}"
            raise ProviderError(msg)

        data = json_object(response, "Etherscan")
        result = data.get("result")
        if str(data.get("status")) == "0":
            # Etherscan reports errors in "result" when status is "0"
            detail = result if isinstance(result, str) else ""
            text = f"{data.get('message', '')} {detail}".strip()
            if not text or text == "0" or any(m in text.lower() for m in EMPTY_RESULT_MESSAGES):
                logger.debug("Etherscan %s returned no records", params["action"])
                return []
            if "rate limit" in text.lower():
                raise RateLimitedError(f"Etherscan rate limit: {text}")
            msg = f"Etherscan API error: {text}"
            raise ProviderError(msg)

        if not isinstance(result, list):
            msg = f"Unexpected Etherscan result for {params['action']}: {result!r}"
            raise ProviderError(msg)
        return result

    def close(self) -> None:
        """Close HTTP client."""
        self.client.close()

    def __enter__(self) -> "EtherscanClient":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()


class IngestionResult(BaseModel):
    """
    Events ingested from the explorer feeds.

    Attributes
    ----------
    events : list[RewardEvent]
        Deduplicated incoming rewards
    feed_errors : dict[str, str]
        Feed name to the failure that emptied it

    """

    events: list[RewardEvent] = Field(default_factory=list)
    feed_errors: dict[str, str] = Field(default_factory=dict)

    @property
    def complete(self) -> bool:
        """True when every feed succeeded."""
        return not self.feed_errors


class ExplorerIngestionAdapter:
    """
    Turns Etherscan account feeds into reward events.

    Direct and internal transfers are read for the tracker's execution
    address, withdrawals for its withdrawal address. Each feed is fetched
    independently; a failing feed is logged and contributes nothing.

    Parameters
    ----------
    client : EtherscanClient
        Explorer client

    """

    def __init__(self, client: EtherscanClient) -> None:
        self.client = client

    def fetch_incoming(self, tracker: Tracker, since: int) -> IngestionResult:
        """
        Fetch incoming transfers credited to a tracker since a timestamp.

        Parameters
        ----------
        tracker : Tracker
            Tracker whose addresses are read
        since : int
            Only transfers with ``timestamp >= since`` are kept

        Returns
        -------
        IngestionResult
            Events merged by hash (first seen wins, in feed order direct,
            internal, withdrawal) and per-feed failures

        """
        start_block = estimate_start_block(since)
        execution_address = tracker.execution_address
        feeds: list[tuple[str, Callable[[], list[RewardEvent]]]] = [
            (
                "direct",
                lambda: self._transfers(
                    self.client.get_transactions(execution_address, start_block),
                    execution_address,
                    since,
                    SourceKind.DIRECT_TRANSFER,
                ),
            ),
            (
                "internal",
                lambda: self._transfers(
                    self.client.get_internal_transactions(execution_address, start_block),
                    execution_address,
                    since,
                    SourceKind.INTERNAL_TRANSFER,
                ),
            ),
            (
                "withdrawal",
                lambda: self._withdrawals(
                    self.client.get_beacon_withdrawals(tracker.wallet_address, start_block),
                    tracker,
                    since,
                ),
            ),
        ]

        result = IngestionResult()
        seen: set[str] = set()
        for name, fetch in feeds:
            try:
                events = fetch()
            except RewardTrackerError as e:
                logger.warning("Etherscan %s feed failed for %s: %s", name, tracker.id, e)
                result.feed_errors[name] = str(e)
                continue
            for event in events:
                if event.hash not in seen:
                    seen.add(event.hash)
                    result.events.append(event)

        logger.info(
            "Ingested %d incoming transfers for %s (%d feed failures)",
            len(result.events),
            tracker.id,
            len(result.feed_errors),
        )
        return result

    @staticmethod
    def _transfers(
        records: list[dict[str, Any]],
        address: str,
        since: int,
        source_kind: SourceKind,
    ) -> list[RewardEvent]:
        events = []
        for tx in records:
            if str(tx.get("to") or "").lower() != address.lower():
                continue
            if str(tx.get("isError", "0")) != "0":
                continue
            amount = _to_units(tx.get("value"), WEI_PER_ETH)
            timestamp = _to_int(tx.get("timeStamp"))
            if amount is None or amount <= 0 or timestamp is None or timestamp < since:
                continue
            if not isinstance(tx.get("hash"), str) or not tx["hash"]:
                continue
            events.append(
                RewardEvent(hash=tx["hash"], timestamp_sec=timestamp, amount=amount, source_kind=source_kind)
            )
        return events

    @staticmethod
    def _withdrawals(records: list[dict[str, Any]], tracker: Tracker, since: int) -> list[RewardEvent]:
        events = []
        for w in records:
            recipient = str(w.get("address") or w.get("withdrawalAddress") or "")
            if recipient.lower() != tracker.wallet_address.lower():
                continue
            amount = _to_units(w.get("amount"), GWEI_PER_ETH)
            timestamp = _to_int(w.get("timestamp") or w.get("blockTimestamp"))
            index = w.get("withdrawalIndex")
            if amount is None or amount <= 0 or timestamp is None or timestamp < since or index is None:
                continue
            events.append(
                RewardEvent(
                    hash=f"withdrawal_{tracker.id}_{index}",
                    timestamp_sec=timestamp,
                    amount=amount,
                    source_kind=SourceKind.CONSENSUS_WITHDRAWAL,
                )
            )
        return events


def _to_units(raw: Any, divisor: Decimal) -> Decimal | None:
    """Convert an integer string in base units into whole units."""
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, TypeError):
        value = None
    if value is None or not value.is_finite():
        logger.debug("Skipping unparsable amount %r", raw)
        return None
    return value / divisor


def _to_int(raw: Any) -> int | None:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None
