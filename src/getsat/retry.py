"""Bounded exponential-backoff retries for remote operations."""

import time
from collections.abc import Callable
from typing import TypeVar

import requests
from dagster import get_dagster_logger
from pystac_client.exceptions import APIError
from rasterio.errors import RasterioIOError

from getsat.config.constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY, RETRYABLE_STATUS_CODES
from getsat.errors import FetchError, TransientFetchError

T = TypeVar("T")

logger = get_dagster_logger(__name__)


def is_transient(exc: BaseException) -> bool:
    """Decide whether a failure is worth another attempt.

    :param exc: Raised exception
    :returns: True for connectivity, timeout, rate limit and server errors
    """
    if isinstance(exc, (TransientFetchError, RasterioIOError, ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        return status is None or status in RETRYABLE_STATUS_CODES
    if isinstance(exc, APIError):
        status = getattr(exc, "status_code", None)
        return status is None or status in RETRYABLE_STATUS_CODES
    return False


class RetryingFetcher:
    """Run zero-argument operations with exponential backoff.

    The delay before attempt ``n + 1`` is ``initial_delay * 2 ** (n - 1)``,
    so 2s, 4s, 8s... for the default settings. No jitter is added and there
    is no sleep after the last attempt.

    :param max_attempts: Total number of attempts, at least 1
    :param initial_delay: Delay in seconds before the first retry
    :param sleep: Sleep function, injectable for tests
    :param retryable: Predicate selecting which exceptions are retried
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        retryable: Callable[[BaseException], bool] = is_transient,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if initial_delay < 0:
            raise ValueError(f"initial_delay must be non-negative, got {initial_delay}")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self._sleep = sleep
        self._retryable = retryable

    def delay_before(self, attempt: int) -> float:
        """Backoff applied before the given 1-based attempt (attempt >= 2)."""
        return float(self.initial_delay * 2 ** (attempt - 2))

    def attempt(self, operation: Callable[[], T], description: str = "remote operation") -> T:
        """Call ``operation`` until it succeeds or attempts run out.

        :param operation: Zero-argument callable
        :param description: Human readable name used in logs and errors
        :returns: Result of the first successful call
        :raises FetchError: When every attempt failed with a retryable error
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                self._sleep(self.delay_before(attempt))
            try:
                return operation()
            except Exception as e:
                if not self._retryable(e):
                    raise
                last_error = e
                logger.warning(f"Attempt {attempt}/{self.max_attempts} of {description} failed: {e}")

        assert last_error is not None
        raise FetchError(description, self.max_attempts, last_error) from last_error
