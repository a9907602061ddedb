"""Decoding of untrusted JSON response bodies."""

import logging
from typing import Any

import httpx

from staking_rewards_tracker.core.errors import ProviderError

logger = logging.getLogger(__name__)


def json_object(response: httpx.Response, source: str) -> dict[str, Any]:
    """
    Decode a response body that must be a JSON object.

    Gateway error pages and other non-JSON bodies are reported as provider
    failures instead of leaking decoder errors to the caller.

    Parameters
    ----------
    response : httpx.Response
        Successful HTTP response
    source : str
        Provider name used in error messages

    Returns
    -------
    dict[str, Any]
        Decoded object

    Raises
    ------
    ProviderError
        If the body is not JSON or not an object

    """
    try:
        data = response.json()
    except ValueError as e:
        msg = f"{source} returned a non-JSON body: {response.text[:200]!r}"
        raise ProviderError(msg) from e
    if not isinstance(data, dict):
        msg = f"{source} returned {type(data).__name__} instead of an object"
        raise ProviderError(msg)
    return data


def only_objects(records: list[Any], source: str) -> list[dict[str, Any]]:
    """Drop records that are not JSON objects."""
    objects = [record for record in records if isinstance(record, dict)]
    if len(objects) != len(records):
        logger.debug("Skipping %d malformed %s records", len(records) - len(objects), source)
    return objects
