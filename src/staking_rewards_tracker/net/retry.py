"""Rate limiting and retry with exponential backoff for HTTP APIs."""

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from staking_rewards_tracker.core.errors import ProviderError, RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    """
    Configuration for retry behavior.

    Parameters
    ----------
    max_retries : int
        Maximum number of retry attempts
    base_delay : float
        Initial delay in seconds before first retry
    max_delay : float
        Maximum delay between retries
    exponential_base : float
        Base for exponential backoff calculation

    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base

    def get_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """
        Calculate delay for a given retry attempt using exponential backoff.

        Parameters
        ----------
        attempt : int
            Current attempt number (0-indexed)
        retry_after : float | None
            Server-provided hint, honoured up to ``max_delay``

        Returns
        -------
        float
            Delay in seconds

        """
        delay = self.base_delay * (self.exponential_base**attempt)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)


class RateLimiter:
    """
    Enforces a minimum interval between consecutive requests.

    A token bucket of size one: each ``wait()`` sleeps until at least
    ``min_interval`` seconds have passed since the previous request. Each
    API client owns its own instance.

    Parameters
    ----------
    min_interval : float
        Minimum seconds between requests
    clock : Callable[[], float]
        Monotonic clock
    sleep : Callable[[float], None]
        Sleep function

    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_request: float | None = None
        self._lock = threading.Lock()

    def wait(self) -> float:
        """
        Block until the next request is allowed.

        Safe to call from several threads; callers are serialized.

        Returns
        -------
        float
            Seconds slept

        """
        with self._lock:
            waited = 0.0
            if self._last_request is not None:
                elapsed = self._clock() - self._last_request
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    self._sleep(waited)
            self._last_request = self._clock()
            return waited


def call_with_backoff(
    func: Callable[[], T],
    config: RetryConfig,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "request",
) -> T:
    """
    Call ``func``, retrying only on rate limiting.

    Parameters
    ----------
    func : Callable[[], T]
        Zero-argument request function
    config : RetryConfig
        Retry ceiling and backoff settings
    sleep : Callable[[float], None]
        Sleep function
    label : str
        Request description for log messages

    Returns
    -------
    T
        Result of ``func``

    Raises
    ------
    ProviderError
        When still rate limited after ``config.max_retries`` retries. Other
        provider errors propagate on first occurrence.

    """
    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except RateLimitedError as e:
            if attempt == config.max_retries:
                msg = f"{label} still rate limited after {attempt + 1} attempts"
                raise ProviderError(msg) from e

            delay = config.get_delay(attempt, e.retry_after)
            logger.warning(
                "%s rate limited (attempt %d/%d), retrying in %.1fs",
                label,
                attempt + 1,
                config.max_retries + 1,
                delay,
            )
            sleep(delay)

    msg = f"{label} failed"
    raise ProviderError(msg)
