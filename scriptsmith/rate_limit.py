"""Rate limiting for outbound generation calls and inbound job submissions.

Two independent concerns live here:

- ``RateLimiter`` throttles calls to the text-generation service. It is an
  owned component (one per ``GenerationClient``) combining a sliding
  requests-per-minute window with a concurrency cap.
- ``RequestRateLimiter`` implementations bound how many jobs a single owner
  may submit per window. The Redis backend shares the window across API
  processes; the memory backend is for tests and single-process use.
"""

import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Generator, Optional

import redis

from .config import (
    GENERATION_ACQUIRE_TIMEOUT_SECONDS,
    GENERATION_MAX_CONCURRENCY,
    GENERATION_REQUESTS_PER_MINUTE,
)
from .errors import RetryableGenerationError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Requests-per-minute and max-concurrency limiter.

    All state is guarded by the instance's own lock and semaphore, so one
    limiter can be shared by every thread that calls through the same client.

    Example:
        limiter = RateLimiter(requests_per_minute=50, max_concurrency=4)
        with limiter.slot(timeout=30):
            call_the_service()
    """

    def __init__(
        self,
        requests_per_minute: int = GENERATION_REQUESTS_PER_MINUTE,
        max_concurrency: int = GENERATION_MAX_CONCURRENCY,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the limiter.

        Args:
            requests_per_minute: Maximum acquisitions per window.
            max_concurrency: Maximum slots held at the same time.
            window_seconds: Length of the sliding window.
            clock: Monotonic clock, injectable for tests.
            sleep: Sleep function, injectable for tests.

        Raises:
            ValueError: If a limit is not positive.
        """
        if requests_per_minute < 1 or max_concurrency < 1:
            raise ValueError("requests_per_minute and max_concurrency must be positive")

        self.requests_per_minute = requests_per_minute
        self.max_concurrency = max_concurrency
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._semaphore = threading.BoundedSemaphore(max_concurrency)
        self._timestamps: Deque[float] = deque()
        self._active = 0

    def _prune(self, now: float) -> None:
        """Drop timestamps that fell out of the window. Caller holds the lock."""
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take a slot, waiting for both a free concurrency slot and window room.

        Args:
            timeout: Maximum seconds to wait. None waits indefinitely.

        Returns:
            True if a slot was taken, False if the timeout expired first.
        """
        deadline = None if timeout is None else self._clock() + timeout

        if not self._semaphore.acquire(timeout=timeout):
            return False

        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.requests_per_minute:
                    self._timestamps.append(now)
                    self._active += 1
                    return True
                wait = self._timestamps[0] + self.window_seconds - now

            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    self._semaphore.release()
                    return False
                wait = min(wait, remaining)

            self._sleep(max(wait, 0.01))

    def release(self) -> None:
        """Return a concurrency slot taken by ``acquire``.

        Raises:
            RuntimeError: If no slot is held.
        """
        with self._lock:
            if self._active == 0:
                raise RuntimeError("release() called without a matching acquire()")
            self._active -= 1
        self._semaphore.release()

    @contextmanager
    def slot(self, timeout: Optional[float] = GENERATION_ACQUIRE_TIMEOUT_SECONDS) -> Generator[None, None, None]:
        """Hold a slot for the duration of the block.

        Raises:
            RetryableGenerationError: If no slot frees up within ``timeout``.
        """
        if not self.acquire(timeout=timeout):
            raise RetryableGenerationError(f"Timed out after {timeout}s waiting for a generation rate limit slot")
        try:
            yield
        finally:
            self.release()

    def status(self) -> Dict[str, Any]:
        """Snapshot of the limiter's current usage."""
        with self._lock:
            self._prune(self._clock())
            return {
                "requests_in_window": len(self._timestamps),
                "requests_per_minute": self.requests_per_minute,
                "active": self._active,
                "max_concurrency": self.max_concurrency,
            }


# === Per-owner submission limits ===


@dataclass
class RateLimitDecision:
    """Outcome of a submission rate check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Maximum requests per window.
        remaining: Requests left in the current window.
        retry_after: Seconds until the next request would be allowed (0 if allowed).
    """

    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class RequestRateLimiter(ABC):
    """Abstract sliding-window limiter keyed by an identifier (e.g. owner id)."""

    @abstractmethod
    def check(self, identifier: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        """Record a request for ``identifier`` if it fits in the window.

        Denied requests are not counted.
        """
        pass


class MemoryRequestRateLimiter(RequestRateLimiter):
    """In-process sliding window, suitable for tests and single-process servers."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[float]] = {}

    def check(self, identifier: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            window = self._windows.setdefault(identifier, deque())
            while window and now - window[0] >= window_seconds:
                window.popleft()

            if len(window) >= max_requests:
                retry_after = max(1, int(window[0] + window_seconds - now + 0.999))
                return RateLimitDecision(allowed=False, limit=max_requests, remaining=0, retry_after=retry_after)

            window.append(now)
            return RateLimitDecision(allowed=True, limit=max_requests, remaining=max_requests - len(window))


class RedisRequestRateLimiter(RequestRateLimiter):
    """Sliding window shared across processes through a Redis sorted set."""

    def __init__(self, client: Any, key_prefix: str = "scriptsmith:ratelimit", clock: Callable[[], float] = time.time):
        """Initialize the limiter.

        Args:
            client: A ``redis.Redis`` client.
            key_prefix: Prefix for the per-identifier sorted set keys.
            clock: Wall clock, injectable for tests.
        """
        self._client = client
        self._prefix = key_prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisRequestRateLimiter":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def check(self, identifier: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        key = f"{self._prefix}:{identifier}"
        now = self._clock()
        member = f"{now}:{uuid.uuid4().hex}"

        pipe = self._client.pipeline()
        pipe.zremrangebyscore(key, 0, now - window_seconds)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.expire(key, window_seconds)
        _, _, count, _ = pipe.execute()

        if count <= max_requests:
            return RateLimitDecision(allowed=True, limit=max_requests, remaining=max_requests - count)

        self._client.zrem(key, member)
        oldest = self._client.zrange(key, 0, 0, withscores=True)
        retry_after = window_seconds
        if oldest:
            retry_after = max(1, int(oldest[0][1] + window_seconds - now + 0.999))
        return RateLimitDecision(allowed=False, limit=max_requests, remaining=0, retry_after=retry_after)


def create_request_rate_limiter(redis_url: Optional[str] = None) -> RequestRateLimiter:
    """Create a submission rate limiter.

    Uses Redis when ``redis_url`` (or the REDIS_URL environment variable) is
    set, otherwise an in-process window.
    """
    if redis_url is None:
        redis_url = os.environ.get("REDIS_URL")

    if redis_url:
        logger.info("Creating Redis request rate limiter")
        return RedisRequestRateLimiter.from_url(redis_url)

    logger.info("Creating in-memory request rate limiter")
    return MemoryRequestRateLimiter()
