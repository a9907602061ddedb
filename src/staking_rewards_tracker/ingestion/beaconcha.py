"""beaconcha.in v2 client and the per-epoch consensus reward adapter."""

import logging
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from pydantic import BaseModel

from staking_rewards_tracker.core.cursor import epoch_end_timestamp
from staking_rewards_tracker.core.errors import InvalidInputError, ProviderError, RateLimitedError, TransientNetworkError
from staking_rewards_tracker.core.models import RewardEvent, SourceKind, Tracker
from staking_rewards_tracker.net.payload import json_object, only_objects
from staking_rewards_tracker.net.retry import RateLimiter, RetryConfig, call_with_backoff

logger = logging.getLogger(__name__)

GWEI_PER_ETH = Decimal(10) ** 9
WEI_PER_ETH = Decimal(10) ** 18


class ValidatorOverview(BaseModel):
    """
    Current state of a validator.

    Attributes
    ----------
    status : str
        Validator status as reported by beaconcha.in (e.g. ``active_online``)
    balance : Decimal | None
        Current balance in ETH

    """

    status: str
    balance: Decimal | None = None


class BeaconchaClient:
    """
    Client for the beaconcha.in v2 validator API.

    Parameters
    ----------
    api_key : str
        API key sent as a Bearer token
    chain : str
        Network name
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

    BASE_URL = "https://beaconcha.in/api/v2/ethereum"

    def __init__(
        self,
        api_key: str,
        chain: str = "mainnet",
        base_url: str = BASE_URL,
        min_interval: float = 1.1,
        retry_config: RetryConfig | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not api_key:
            msg = "beaconcha.in API key is required"
            raise InvalidInputError(msg)
        self.api_key = api_key
        self.chain = chain
        self.base_url = base_url
        self.retry_config = retry_config or RetryConfig()
        self.client = client or httpx.Client(timeout=30.0)
        self._sleep = sleep
        self.rate_limiter = RateLimiter(min_interval, sleep=sleep)

    def get_epoch_rewards(self, public_key: str, epoch: int, page_size: int = 100) -> list[dict[str, Any]]:
        """
        Fetch the reward items of a validator for one epoch.

        Parameters
        ----------
        public_key : str
            Validator public key
        epoch : int
            Epoch number
        page_size : int
            Items requested

        Returns
        -------
        list[dict[str, Any]]
            Raw reward items; amounts are in gwei

        """
        body = {
            "validator": {"validator_identifiers": [public_key]},
            "chain": self.chain,
            "page_size": page_size,
            "epoch": epoch,
        }
        data = self._post("validators/rewards-list", body).get("data")
        if not isinstance(data, list):
            msg = f"Unexpected rewards-list response for epoch {epoch}"
            raise ProviderError(msg)
        return only_objects(data, "beaconcha.in reward")

    def get_validator_overview(self, public_key: str) -> ValidatorOverview | None:
        """Fetch the status and balance of a validator, None if unknown."""
        body = {
            "validator": {"validator_identifiers": [public_key]},
            "chain": self.chain,
            "page_size": 1,
        }
        data = self._post("validators", body).get("data")
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            return None

        first = data[0]
        status = first.get("status")
        if not isinstance(status, str) or not status:
            return None
        balances = first.get("balances")
        current = balances.get("current") if isinstance(balances, dict) else None
        return ValidatorOverview(status=status, balance=_to_units(current, WEI_PER_ETH))

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return call_with_backoff(
            lambda: self._request(path, body),
            self.retry_config,
            sleep=self._sleep,
            label=f"beaconcha.in {path}",
        )

    def _request(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        self.rate_limiter.wait()
        try:
            response = self.client.post(
                f"{self.base_url}/{path}",
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TimeoutException as e:
            msg = f"Request timeout: {e}"
            raise TransientNetworkError(msg) from e
        except httpx.HTTPError as e:
            msg = f"HTTP request failed: {e}"
            raise TransientNetworkError(msg) from e

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitedError(
                "beaconcha.in rate limit reached",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.is_error:
            msg = f"beaconcha.in error {response.status_code}: {response.text[:200]}"
            raise ProviderError(msg)

        return json_object(response, "beaconcha.in")

    def close(self) -> None:
        """Close HTTP client."""
        self.client.close()

    def __enter__(self) -> "BeaconchaClient":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()


class ConsensusRewardsAdapter:
    """
    Turns per-epoch validator rewards into reward events.

    One event per tracker and epoch, keyed ``beacon_{tracker_id}_{epoch}``
    and stamped with the last second of the epoch. Epochs with a net reward
    of zero or less produce no event.

    Parameters
    ----------
    client : BeaconchaClient
        beaconcha.in client

    """

    def __init__(self, client: BeaconchaClient) -> None:
        self.client = client

    def fetch_epoch(self, tracker: Tracker, epoch: int) -> list[RewardEvent]:
        """
        Fetch the reward of a tracker's validator in one epoch.

        Parameters
        ----------
        tracker : Tracker
            Tracker with a validator public key
        epoch : int
            Epoch number

        Returns
        -------
        list[RewardEvent]
            Zero or one events

        """
        if not tracker.validator_public_key:
            msg = f"Tracker {tracker.id} has no validator public key"
            raise InvalidInputError(msg)

        items = self.client.get_epoch_rewards(tracker.validator_public_key, epoch)
        total = Decimal(0)
        for item in items:
            amount = _to_units(item.get("total_reward") or item.get("total"), GWEI_PER_ETH)
            if amount is not None:
                total += amount

        if total <= 0:
            logger.debug("No positive reward for %s in epoch %d", tracker.id, epoch)
            return []

        return [
            RewardEvent(
                hash=f"beacon_{tracker.id}_{epoch}",
                timestamp_sec=epoch_end_timestamp(epoch),
                amount=total,
                source_kind=SourceKind.CONSENSUS_REWARD,
            )
        ]

    def fetch_overview(self, tracker: Tracker) -> ValidatorOverview | None:
        """Fetch the validator overview of a tracker, None without a validator key."""
        if not tracker.validator_public_key:
            return None
        return self.client.get_validator_overview(tracker.validator_public_key)


def _to_units(raw: Any, divisor: Decimal) -> Decimal | None:
    if raw is None:
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        logger.debug("Skipping unparsable amount %r", raw)
        return None
    if not value.is_finite():
        return None
    return value / divisor
