"""Retry helpers for calls to the GitHub REST API.

Provides exponential backoff with jitter so transient GitHub blips
(gateway errors, secondary rate limits, dropped connections) do not fail a
dispatch or an ingestion page outright.
"""

from __future__ import annotations

import logging
import random
import time

import requests

log = logging.getLogger(__name__)

MAX_RETRIES = 3
BASE_DELAY = 2.0
MAX_JITTER = 1.0


def exponential_backoff_delay(attempt: int, base: float = BASE_DELAY, max_jitter: float = MAX_JITTER) -> float:
    """Calculate delay with exponential backoff and random jitter.

    Formula: ``base * 2^attempt + uniform(0, max_jitter)``
    """
    return base * (2 ** attempt) + random.uniform(0, max_jitter)


def request_with_retry(
    method: str,
    url: str,
    *,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    max_jitter: float = MAX_JITTER,
    retry_statuses: tuple[int, ...] = (502, 503, 504, 429),
    session: requests.Session | None = None,
    **kwargs,
) -> requests.Response:
    """Execute an HTTP request with exponential backoff and jitter on failure.

    Retries on network errors (``ConnectionError``, ``Timeout``) and on
    status codes listed in *retry_statuses*.  The final response is returned
    as-is, whatever its status; callers decide what a non-2xx means.

    Parameters
    ----------
    method : str
        HTTP method (``"GET"``, ``"POST"``, ...).
    url : str
        Request URL.
    max_retries : int
        Total number of attempts (default 3).
    session : requests.Session | None
        Session to send through; ``requests.request`` when omitted.
    **kwargs
        Forwarded to ``request()`` (headers, json, params, timeout, etc.).
    """
    send = session.request if session is not None else requests.request
    last_err: Exception | None = None
    for attempt in range(1, max_retries + 1):
        try:
            resp = send(method, url, **kwargs)
            if resp.status_code in retry_statuses and attempt < max_retries:
                delay = exponential_backoff_delay(attempt, base_delay, max_jitter)
                log.warning(
                    "Retry %d/%d for %s (status %s, waiting %.1fs)",
                    attempt, max_retries, url, resp.status_code, delay,
                )
                time.sleep(delay)
                continue
            return resp
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            last_err = e
            if attempt < max_retries:
                delay = exponential_backoff_delay(attempt, base_delay, max_jitter)
                log.warning(
                    "Retry %d/%d for %s (error: %s, waiting %.1fs)",
                    attempt, max_retries, url, e, delay,
                )
                time.sleep(delay)
            else:
                raise
    raise last_err  # type: ignore[misc]
