"""
Token-bucket quota guard for upstream calls.

Two kinds of scope share one registry:
- QuotaScope.GLOBAL: every upstream call made by this process
- QuotaScope.for_proxy(endpoint): calls through one proxy endpoint

Each scope has its own bucket (capacity C, refilled continuously at R tokens
per second) and its own in-flight cap. A granted Permit spends one token and
holds one in-flight slot until released. Check-and-decrement happens under
the bucket's lock, so concurrent callers never overspend a bucket.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar

from caption.config import Settings
from caption.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaScope:
    """Key of a rate-limit scope."""

    key: str

    GLOBAL: ClassVar["QuotaScope"]

    @classmethod
    def for_proxy(cls, endpoint) -> "QuotaScope":
        """Scope for calls through one proxy endpoint."""
        return cls(f"proxy:{endpoint.key}")

    @property
    def is_global(self) -> bool:
        return self.key == "global"

    def __str__(self) -> str:
        return self.key


QuotaScope.GLOBAL = QuotaScope("global")


@dataclass(frozen=True)
class BucketConfig:
    """
    Limits for one kind of scope.

    Attributes:
        capacity: Burst size (tokens when full)
        refill_rate: Tokens added per second
        max_in_flight: Concurrent permits allowed
    """

    capacity: int
    refill_rate: float
    max_in_flight: int

    @property
    def refill_interval(self) -> float:
        """Seconds needed to refill one token."""
        return 1.0 / self.refill_rate


class TokenBucket:
    """Token bucket with an in-flight counter, guarded by its own lock."""

    def __init__(self, config: BucketConfig, clock: Callable[[], float]):
        self.config = config
        self._clock = clock
        self._tokens = float(config.capacity)
        self._updated_at = clock()
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def available(self) -> float:
        """Tokens currently available (after refill)."""
        with self._lock:
            self._refill()
            return self._tokens

    def try_take(self, concurrency_retry_after: float) -> float | None:
        """
        Spend a token and take an in-flight slot if both are available.

        Args:
            concurrency_retry_after: Hint returned when only the in-flight cap blocks

        Returns:
            None if granted, otherwise seconds to wait before retrying
        """
        with self._lock:
            self._refill()
            if self._in_flight >= self.config.max_in_flight:
                return concurrency_retry_after
            if self._tokens < 1.0:
                return (1.0 - self._tokens) / self.config.refill_rate
            self._tokens -= 1.0
            self._in_flight += 1
            return None

    def release(self) -> None:
        """Give back an in-flight slot (tokens are not returned)."""
        with self._lock:
            if self._in_flight > 0:
                self._in_flight -= 1

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._updated_at = now
        self._tokens = min(
            float(self.config.capacity),
            self._tokens + elapsed * self.config.refill_rate,
        )


class Permit:
    """
    Granted quota for one upstream call.

    Release it when the call finishes; releasing twice is harmless.

    Example:
        with limiter.try_acquire(QuotaScope.GLOBAL):
            await client.list_tracks(video, proxy)
    """

    def __init__(self, scope: QuotaScope, bucket: TokenBucket):
        self.scope = scope
        self._bucket = bucket
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._bucket.release()

    def __enter__(self) -> "Permit":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class RateLimiter:
    """
    Registry of token buckets keyed by scope.

    Buckets for proxy scopes are created on first use. Creation takes a
    registry lock; spending takes only the bucket's own lock.
    """

    def __init__(
        self,
        global_config: BucketConfig,
        proxy_config: BucketConfig,
        concurrency_retry_after: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            global_config: Limits for the global scope
            proxy_config: Limits applied to each proxy scope
            concurrency_retry_after: Retry hint when a scope is at its in-flight cap
            clock: Monotonic time source
        """
        for config in (global_config, proxy_config):
            if config.capacity < 1 or config.refill_rate <= 0 or config.max_in_flight < 1:
                raise ValueError(f"Invalid bucket configuration: {config}")

        self.global_config = global_config
        self.proxy_config = proxy_config
        self.concurrency_retry_after = concurrency_retry_after
        self._clock = clock
        self._buckets: dict[QuotaScope, TokenBucket] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> "RateLimiter":
        """
        Create RateLimiter from application settings.

        Args:
            settings: Application settings
            clock: Monotonic time source

        Returns:
            Configured RateLimiter instance
        """
        return cls(
            global_config=BucketConfig(
                capacity=settings.global_bucket_capacity,
                refill_rate=settings.global_refill_rate,
                max_in_flight=settings.global_max_in_flight,
            ),
            proxy_config=BucketConfig(
                capacity=settings.proxy_bucket_capacity,
                refill_rate=settings.proxy_refill_rate,
                max_in_flight=settings.proxy_max_in_flight,
            ),
            concurrency_retry_after=settings.concurrency_retry_after,
            clock=clock,
        )

    def try_acquire(self, scope: QuotaScope) -> Permit:
        """
        Take quota for one call in a scope without waiting.

        Args:
            scope: QuotaScope.GLOBAL or QuotaScope.for_proxy(endpoint)

        Returns:
            Permit to release when the call finishes

        Raises:
            RateLimited: If the scope has no token or no free in-flight slot
        """
        bucket = self._bucket_for(scope)
        retry_after = bucket.try_take(self.concurrency_retry_after)

        if retry_after is not None:
            logger.debug(f"Quota denied for {scope}: retry in {retry_after:.2f}s")
            raise RateLimited(
                f"Rate limit reached for scope {scope}",
                retry_after=retry_after,
                scope=scope.key,
            )

        return Permit(scope, bucket)

    def available(self, scope: QuotaScope) -> float:
        """Tokens currently available in a scope."""
        return self._bucket_for(scope).available()

    def in_flight(self, scope: QuotaScope) -> int:
        """Permits currently held in a scope."""
        return self._bucket_for(scope).in_flight

    def _bucket_for(self, scope: QuotaScope) -> TokenBucket:
        bucket = self._buckets.get(scope)
        if bucket is not None:
            return bucket

        with self._registry_lock:
            bucket = self._buckets.get(scope)
            if bucket is None:
                config = self.global_config if scope.is_global else self.proxy_config
                bucket = TokenBucket(config, self._clock)
                self._buckets[scope] = bucket
            return bucket
