"""Fixed-window rate limiting over a bounded, expiring cache.

Each key (API key when the caller sent one, client IP otherwise) gets a
counter and a window end. A window opens on the first request, admits up to
``max_requests``, and everything after is rejected with the time left until
the window closes. Bursts straddling a window boundary can reach
``2 * max_requests``; that is accepted.

Memory is bounded twice over by ``TTLCache``: at most ``max_entries`` keys
(least recently used evicted first), and every entry expires ``ttl`` seconds
after it was last written.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

from latex_service.config import settings
from latex_service.utils.clock import monotonic

logger = structlog.get_logger().bind(component="sandbox.rate_limit")

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """LRU map with a per-entry time-to-live."""

    def __init__(
        self,
        max_entries: int,
        ttl: float,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self.max_entries = max_entries
        self.ttl = ttl
        self._clock = clock
        self._data: OrderedDict[K, tuple[V, float]] = OrderedDict()

    def __len__(self) -> int:
        self._expire()
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def _expire(self) -> None:
        now = self._clock()
        for key in [k for k, (_, expires_at) in self._data.items() if expires_at <= now]:
            del self._data[key]

    def get(self, key: K) -> V | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> None:
        self._data[key] = (value, self._clock() + self.ttl)
        self._data.move_to_end(key)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()


@dataclass(slots=True)
class RateLimitRecord:
    count: int
    reset_at: float


@dataclass(frozen=True, slots=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float
    """Seconds until the current window closes."""

    @property
    def retry_after(self) -> float:
        return 0.0 if self.allowed else self.reset_after


class RateLimiter:
    """``admit(key)`` → allow, or reject with the seconds left in the window."""

    def __init__(
        self,
        max_requests: int | None = None,
        window: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.max_requests = max_requests or settings.rate_limit_max_requests
        self.window = window or settings.rate_limit_window
        self._clock = clock
        self._cache: TTLCache[str, RateLimitRecord] = TTLCache(
            max_entries or settings.rate_limit_max_entries, self.window, clock
        )

    @property
    def size(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()

    def admit(self, key: str) -> RateDecision:
        now = self._clock()
        record = self._cache.get(key)

        if record is None or now >= record.reset_at:
            record = RateLimitRecord(count=1, reset_at=now + self.window)
            self._cache.set(key, record)
            return RateDecision(True, self.max_requests, self.max_requests - 1, self.window)

        if record.count >= self.max_requests:
            logger.info("rate_limited", count=record.count, limit=self.max_requests)
            return RateDecision(False, self.max_requests, 0, record.reset_at - now)

        record.count += 1
        self._cache.set(key, record)
        return RateDecision(
            True,
            self.max_requests,
            self.max_requests - record.count,
            record.reset_at - now,
        )
