"""Per-source token buckets and the bounded retry policy for external calls."""
from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional, Tuple, TypeVar

from cvrag.errors import RateLimitExceeded, SourceUnavailable, TransientError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class TokenBucket:
    """Token bucket with reservation semantics.

    ``acquire`` either takes a token immediately, reserves a future token and
    sleeps until it is due, or fails fast with :class:`RateLimitExceeded` when
    the wait would exceed the caller's timeout.
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        *,
        key: str = "bucket",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be a positive integer")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.key = key
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate)
        self._updated = now

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    async def acquire(self, timeout: float | None = 0.0) -> None:
        """Take one token, waiting at most ``timeout`` seconds (``0``/``None`` fails fast)."""

        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return
            wait = (1.0 - self._tokens) / self.refill_rate
            if not timeout or wait > timeout:
                raise RateLimitExceeded(self.key, retry_after=wait)
            self._tokens -= 1.0
        LOGGER.debug("Rate limiter %s waiting %.3fs for a token", self.key, wait)
        await self._sleep(wait)


@dataclass(frozen=True, slots=True)
class Quota:
    max_requests_per_window: int
    window_seconds: float

    @property
    def refill_rate(self) -> float:
        if self.window_seconds <= 0:
            return float(self.max_requests_per_window)
        return self.max_requests_per_window / self.window_seconds


class RateLimiter:
    """Registry of token buckets keyed by ``(source, account)``."""

    def __init__(
        self,
        quotas: Mapping[str, Quota],
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._quotas = dict(quotas)
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[Tuple[str, str], TokenBucket] = {}
        self._lock = threading.Lock()

    def bucket(self, source: str, account: str) -> TokenBucket:
        key = (source, account)
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                quota = self._quotas.get(source)
                if quota is None:
                    raise KeyError(f"No quota configured for source {source!r}")
                bucket = TokenBucket(
                    quota.max_requests_per_window,
                    quota.refill_rate,
                    key=f"{source}:{account}",
                    clock=self._clock,
                    sleep=self._sleep,
                )
                self._buckets[key] = bucket
            return bucket

    async def acquire(self, source: str, account: str, timeout: float | None = 0.0) -> None:
        await self.bucket(source, account).acquire(timeout)


class RetryPolicy:
    """Exponential backoff with full jitter that only retries transient failures."""

    def __init__(
        self,
        max_attempts: int = 3,
        *,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be a positive integer")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return self._rng.uniform(0, ceiling)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        on_attempt: Callable[[int], None] | None = None,
    ) -> T:
        last_error: TransientError | None = None
        for attempt in range(1, self.max_attempts + 1):
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                return await operation()
            except TransientError as error:
                last_error = error
                if attempt == self.max_attempts:
                    break
                delay = self.backoff(attempt)
                LOGGER.warning(
                    "%s failed (attempt %s/%s): %s; retrying in %.2fs",
                    description,
                    attempt,
                    self.max_attempts,
                    error,
                    delay,
                )
                await self._sleep(delay)
        raise SourceUnavailable(
            f"{description} unavailable after {self.max_attempts} attempts",
            attempts=self.max_attempts,
            cause=last_error,
        )


__all__ = ["Quota", "RateLimiter", "RetryPolicy", "TokenBucket"]
