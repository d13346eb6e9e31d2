"""
Bounded retry policies for the retriever, built on tenacity.

- QuotaBackoff: RateLimited retries that follow the retry-after hint, never
  shorten the delay, and stop at a total wait budget
- rotation_retrying: upstream retries across proxy endpoints with capped
  exponential delay
"""

import logging
from collections.abc import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from caption.errors import RateLimited, UpstreamBlocked, UpstreamUnavailable

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class QuotaBackoff:
    """
    Delay policy for RateLimited retries within one retrieval.

    The delay before retry n is max(retry_after hint, delay before retry n-1),
    so delays never decrease. Retrying stops after max_attempts attempts or
    when the next delay would push the total wait past max_total_wait.

    Example:
        backoff = QuotaBackoff(max_attempts=3, max_total_wait=10.0)
        async for attempt in backoff.retrying(asyncio.sleep):
            with attempt:
                permit = limiter.try_acquire(QuotaScope.GLOBAL)
    """

    def __init__(self, max_attempts: int, max_total_wait: float):
        self.max_attempts = max_attempts
        self.max_total_wait = max_total_wait
        # attempt number -> delay after that attempt; stop and wait may run in either order
        self._delays: dict[int, float] = {}

    @property
    def total_wait(self) -> float:
        return sum(self._delays.values())

    def delay_after(self, retry_state: RetryCallState) -> float:
        attempt = retry_state.attempt_number
        if attempt not in self._delays:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            hint = error.retry_after if isinstance(error, RateLimited) else 0.0
            self._delays[attempt] = max(hint, self._delays.get(attempt - 1, 0.0))
        return self._delays[attempt]

    def should_stop(self, retry_state: RetryCallState) -> bool:
        if retry_state.attempt_number >= self.max_attempts:
            return True
        self.delay_after(retry_state)
        return self.total_wait > self.max_total_wait

    def wait(self, retry_state: RetryCallState) -> float:
        return self.delay_after(retry_state)

    def retrying(self, sleep: Sleep) -> AsyncRetrying:
        """Retry controller; the last RateLimited is re-raised when it gives up."""
        return AsyncRetrying(
            stop=self.should_stop,
            wait=self.wait,
            retry=retry_if_exception_type(RateLimited),
            sleep=sleep,
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.INFO),
        )


def rotation_retrying(
    max_attempts: int,
    backoff: float,
    backoff_max: float,
    sleep: Sleep,
) -> AsyncRetrying:
    """
    Retry controller for upstream calls rotated across proxies.

    Only proxy/upstream-attributable errors are retried; everything else
    propagates on the first occurrence.

    Args:
        max_attempts: Total attempts including the first
        backoff: First delay in seconds (doubles each retry)
        backoff_max: Delay cap in seconds
        sleep: Async sleep function

    Returns:
        AsyncRetrying that re-raises the last error when attempts run out
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff, min=0, max=backoff_max),
        retry=retry_if_exception_type((UpstreamBlocked, UpstreamUnavailable)),
        sleep=sleep,
        reraise=True,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
