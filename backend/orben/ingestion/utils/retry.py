"""Retry policy for source fetches."""

from typing import Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from orben.core.exceptions import FetchError


logger = structlog.get_logger(__name__)

# Cap on how long a Retry-After header may hold up a run
MAX_RETRY_AFTER_SECONDS = 60.0


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and exc.retryable


class wait_retry_after_or_exponential:
    """Honour a FetchError's retry_after, otherwise back off exponentially."""

    def __init__(self, multiplier: float = 1, min: float = 1, max: float = 30):
        self._fallback = wait_exponential(multiplier=multiplier, min=min, max=max)

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, FetchError) and exc.retry_after is not None:
            return min(max(exc.retry_after, 0.0), MAX_RETRY_AFTER_SECONDS)
        return self._fallback(retry_state)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "fetch_retry_scheduled",
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        error=str(exc),
    )


def fetch_retrying(
    max_attempts: int,
    sleep: Optional[Callable] = None,
) -> AsyncRetrying:
    """Build an AsyncRetrying for one fetch.

    Only retryable FetchErrors (timeouts, transport errors, 429, 5xx) are
    retried; anything else propagates on the first attempt.

    Args:
        max_attempts: Total attempts including the first
        sleep: Optional async sleep override (tests pass a no-op)

    Returns:
        AsyncRetrying usable as ``async for attempt in ...``
    """
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_retry_after_or_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_before_sleep,
        reraise=True,
        **kwargs,
    )
