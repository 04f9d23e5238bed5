"""
Bounded retry with exponential backoff.

Used by the orchestrator to retry a chunk after a transient store outage
before giving up and failing the job.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Type

import requests
from loguru import logger

from tickercache.exceptions import StoreUnavailableError

TRANSIENT_EXCEPTIONS: tuple[Type[BaseException], ...] = (
    StoreUnavailableError,
    TimeoutError,
    ConnectionError,
    requests.Timeout,
    requests.ConnectionError,
)


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None):
        super().__init__(message)
        self.last_exception = last_exception


def is_transient_error(exception: BaseException) -> bool:
    """
    True for failures worth retrying: store outages, timeouts, dropped
    connections, HTTP 5xx and 429.
    """
    if isinstance(exception, TRANSIENT_EXCEPTIONS):
        return True

    response = getattr(exception, "response", None)
    status_code = getattr(response, "status_code", None)
    return isinstance(status_code, int) and (status_code >= 500 or status_code == 429)


@dataclass(frozen=True)
class Backoff:
    """Delay schedule: base_delay * factor**attempt, capped at max_delay, optionally jittered."""

    base_delay: float = 1.0
    max_delay: float = 60.0
    factor: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.factor ** attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay


def retry_call(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = 3,
    backoff: Backoff | None = None,
    exceptions: tuple[Type[Exception], ...] = (Exception,),
    on_retry: Callable[[Exception, int, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> Any:
    """
    Call func, retrying transient failures.

    Exceptions outside ``exceptions`` propagate untouched; caught ones that are
    not transient are re-raised immediately.

    Args:
        func: Function to call
        *args: Positional arguments for func
        max_retries: Retries after the first attempt (0 = single attempt)
        backoff: Delay schedule (default: Backoff())
        exceptions: Exception types eligible for retry
        on_retry: Optional callback with (exception, attempt, delay)
        sleep: Sleep function
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        RetryError: When every attempt failed; last_exception holds the cause
    """
    backoff = backoff or Backoff()
    name = getattr(func, "__name__", repr(func))
    last_exception: Exception | None = None

    for attempt in range(max_retries + 1):
        try:
            return func(*args, **kwargs)
        except exceptions as e:
            last_exception = e
            if attempt >= max_retries:
                break
            if not is_transient_error(e):
                logger.debug(f"Non-transient error in {name}, not retrying: {e}")
                raise

            delay = backoff.delay(attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed for {name}: {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            if on_retry:
                on_retry(e, attempt + 1, delay)
            sleep(delay)

    error_msg = f"Failed after {max_retries + 1} attempts: {name}"
    logger.error(f"{error_msg}. Last error: {last_exception}")
    raise RetryError(error_msg, last_exception) from last_exception
