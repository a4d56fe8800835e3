"""
Retry and polling helpers built on tenacity.

call_with_retry wraps a single provider call: transient errors are retried
with exponential backoff (base × 2^(attempt-1)), and a rate-limit error that
carries a Retry-After value waits exactly that long instead.
"""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from ..errors import ProviderTimeoutError, RateLimitError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _BackoffWait:
    """tenacity wait strategy: honour Retry-After, else exponential from base."""

    def __init__(self, base_delay: float):
        self.base_delay = base_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            exc = outcome.exception()
            if isinstance(exc, RateLimitError) and exc.retry_after is not None:
                return max(0.0, float(exc.retry_after))
        return self.base_delay * (2 ** (retry_state.attempt_number - 1))


def call_with_retry(
    fn: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 5.0,
    operation: str = "provider call",
) -> T:
    """
    Run fn, retrying TransientProviderError up to `attempts` times in total.
    The last error is re-raised once attempts are exhausted; non-transient
    errors propagate on first occurrence.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=_BackoffWait(base_delay),
        retry=retry_if_exception_type(TransientProviderError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.info(f"{operation}: attempt {attempt.retry_state.attempt_number}/{attempts}")
            return fn()
    # Unreachable: Retrying either returns from the block or re-raises
    raise RuntimeError(f"{operation}: retry loop exited without result")


def poll_until(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    timeout: float,
    interval: float = 2.0,
    what: str = "resource",
) -> T:
    """
    Call fetch every `interval` seconds until done(result) is true.
    Raises ProviderTimeoutError after `timeout` seconds.
    """
    retrying = Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda result: not done(result)),
    )
    try:
        return retrying(fetch)
    except RetryError as e:
        raise ProviderTimeoutError(f"Timed out after {timeout:.0f}s waiting for {what}") from e
