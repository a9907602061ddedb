"""Typed failures surfaced by adapters, stores, and the reconciliation engine."""


class RewardTrackerError(Exception):
    """Base class for all tracker failures."""


class ProviderError(RewardTrackerError):
    """An external API returned a non-success response."""


class RateLimitedError(ProviderError):
    """An external API asked us to slow down (HTTP 429 or equivalent)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientNetworkError(ProviderError):
    """Timeout or connection failure talking to an external API."""


class NotFoundError(RewardTrackerError):
    """The requested record does not exist."""


class InvalidInputError(RewardTrackerError):
    """Input that will never succeed when retried."""


class StoreWriteError(RewardTrackerError):
    """A durable store rejected a write."""


class DeletionError(RewardTrackerError):
    """
    Bulk deletion did not complete in every store.

    Parameters
    ----------
    tracker_id : str
        Tracker whose events were being deleted
    failures : dict[str, Exception]
        Store name to the exception it raised

    """

    def __init__(self, tracker_id: str, failures: dict[str, Exception]) -> None:
        self.tracker_id = tracker_id
        self.failures = failures
        stores = ", ".join(sorted(failures))
        super().__init__(f"Deleting events of {tracker_id} failed in: {stores}")


class OperationInProgressError(RewardTrackerError):
    """An operation on the same tracker is already running."""
