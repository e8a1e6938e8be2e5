"""Per-recipient send budget.

Fixed-window token bucket held in process memory: each key gets ``points``
sends per ``duration_seconds`` window, starting at the key's first send.
The attempt that finds the bucket empty is denied and blocks the key for
``block_multiplier`` windows.  State is rebuildable, so losing it on
restart only ever grants a fresh budget.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import NamedTuple

from contractflow.core.errors import RateLimited

logger = logging.getLogger(__name__)


class RateLimitResult(NamedTuple):
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    reset_at: float  # Unix timestamp
    limit: int
    retry_after: float = 0.0


@dataclass
class _Bucket:
    consumed: int
    window_reset_at: float
    blocked_until: float | None = None


class TokenBucketRateLimiter:
    def __init__(
        self,
        points: int = 5,
        duration_seconds: float = 24 * 60 * 60,
        block_multiplier: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if points < 1:
            raise ValueError("points must be >= 1")
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be > 0")
        self.points = points
        self.duration_seconds = float(duration_seconds)
        self.block_seconds = float(duration_seconds) * block_multiplier
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def consume(self, key: str) -> RateLimitResult:
        """Spend one point for *key*; atomic with respect to other callers."""
        with self._lock:
            now = self._clock()
            bucket = self._live_bucket(key, now)

            if bucket.blocked_until is not None:
                return self._denied(bucket.blocked_until, now)

            if bucket.consumed >= self.points:
                bucket.blocked_until = now + self.block_seconds
                logger.warning("Rate limit exceeded; recipient blocked for %.0fs", self.block_seconds)
                return self._denied(bucket.blocked_until, now)

            bucket.consumed += 1
            return RateLimitResult(
                allowed=True,
                remaining=self.points - bucket.consumed,
                reset_at=bucket.window_reset_at,
                limit=self.points,
            )

    def status(self, key: str) -> RateLimitResult:
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None or self._expired(bucket, now):
                return RateLimitResult(
                    allowed=True,
                    remaining=self.points,
                    reset_at=now + self.duration_seconds,
                    limit=self.points,
                )
            if bucket.blocked_until is not None:
                return self._denied(bucket.blocked_until, now)
            return RateLimitResult(
                allowed=bucket.consumed < self.points,
                remaining=max(self.points - bucket.consumed, 0),
                reset_at=bucket.window_reset_at,
                limit=self.points,
            )

    def require(self, key: str) -> RateLimitResult:
        """Like :meth:`consume` but raises :class:`RateLimited` on denial."""
        result = self.consume(key)
        if not result.allowed:
            raise RateLimited(result.retry_after)
        return result

    def reset(self, key: str) -> bool:
        with self._lock:
            return self._buckets.pop(key, None) is not None

    def _live_bucket(self, key: str, now: float) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None or self._expired(bucket, now):
            bucket = _Bucket(consumed=0, window_reset_at=now + self.duration_seconds)
            self._buckets[key] = bucket
        return bucket

    @staticmethod
    def _expired(bucket: _Bucket, now: float) -> bool:
        if bucket.blocked_until is not None:
            return now >= bucket.blocked_until
        return now >= bucket.window_reset_at

    def _denied(self, until: float, now: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_at=until,
            limit=self.points,
            retry_after=max(until - now, 0.0),
        )
