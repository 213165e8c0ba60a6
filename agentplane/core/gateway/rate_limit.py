from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

Clock = Callable[[], float]


@dataclass(frozen=True)
class RateBucket:
    count: int
    window_start: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    reset_in_s: float

    def to_dict(self) -> dict[str, float | int]:
        return {"remaining": self.remaining, "resetIn": round(self.reset_in_s * 1000)}


class BucketStore:
    """Concurrency-safe map of actor key -> RateBucket.

    Created once and handed to the limiter; never reset implicitly.
    """

    def __init__(self) -> None:
        self._buckets: dict[str, RateBucket] = {}
        self._lock = threading.Lock()

    def update(self, key: str, fn: Callable[[Optional[RateBucket]], RateBucket]) -> RateBucket:
        with self._lock:
            bucket = fn(self._buckets.get(key))
            self._buckets[key] = bucket
            return bucket

    def get(self, key: str) -> Optional[RateBucket]:
        with self._lock:
            return self._buckets.get(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


class RateLimiter:
    """Fixed-window request counter per actor key."""

    def __init__(
        self,
        cap: int = 120,
        window_s: float = 60.0,
        store: Optional[BucketStore] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        if cap < 1:
            raise ValueError("cap must be >= 1")
        if window_s <= 0:
            raise ValueError("window_s must be > 0")
        self.cap = cap
        self.window_s = window_s
        self.store = store if store is not None else BucketStore()
        self._clock = clock

    def check(self, key: str) -> RateDecision:
        """Count one request against `key` and report whether it may proceed."""

        now = self._clock()

        def step(bucket: Optional[RateBucket]) -> RateBucket:
            if bucket is None or now - bucket.window_start > self.window_s:
                return RateBucket(count=1, window_start=now)
            return RateBucket(count=bucket.count + 1, window_start=bucket.window_start)

        bucket = self.store.update(key, step)
        reset_in = max(0.0, self.window_s - (now - bucket.window_start))

        if bucket.count > self.cap:
            return RateDecision(allowed=False, remaining=0, reset_in_s=reset_in)
        return RateDecision(allowed=True, remaining=max(0, self.cap - bucket.count), reset_in_s=reset_in)

    def peek(self, key: str) -> RateDecision:
        """Report the budget left for `key` without counting a request."""

        now = self._clock()
        bucket = self.store.get(key)
        if bucket is None or now - bucket.window_start > self.window_s:
            return RateDecision(allowed=True, remaining=self.cap, reset_in_s=self.window_s)
        reset_in = max(0.0, self.window_s - (now - bucket.window_start))
        return RateDecision(allowed=bucket.count < self.cap, remaining=max(0, self.cap - bucket.count), reset_in_s=reset_in)

    def config(self) -> dict[str, int]:
        return {"maxPerMinute": self.cap, "windowMs": int(self.window_s * 1000)}
