"""
auth/ratelimit.py -- In-process token-bucket throttling keyed by client IP and identity.

Algorithm: continuous-refill token bucket. Each bucket holds up to `capacity`
tokens and regains `rate` tokens per second of elapsed time. An admitted
request consumes exactly one token; a rejected one consumes nothing.

Concurrency model:
  Buckets live in one dict per keyspace. Reading an existing bucket from the
  dict needs no lock (dict lookups are atomic). Creating a missing bucket
  takes the keyspace's creation lock and re-checks the dict before inserting,
  so simultaneous first requests for the same key all get the same bucket.
  Token accounting happens under each bucket's own lock, so requests for
  unrelated keys never wait on each other.

Eviction (opt-in):
  sweep() drops buckets that have been idle for at least idle_seconds AND
  have refilled to capacity. A fresh bucket is created full, so dropping a
  full bucket never changes an admission decision. A swept bucket is marked
  retired under its own lock; a caller that raced with the sweep and still
  holds the old object sees the retired flag and looks the key up again.

Layer rule: no imports from api/. Stdlib only besides auth/ and core/.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from enum import Enum

from core.config import Settings

logger = logging.getLogger("accessgate.auth.ratelimit")


class Scope(str, Enum):
    IP = "ip"
    IDENTITY = "identity"


class TokenBucket:
    """A single continuously refilled token bucket. Created full."""

    __slots__ = ("rate", "capacity", "_tokens", "_last_refill", "_last_used", "_clock", "_lock", "retired")

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.rate = float(rate)
        self.capacity = float(capacity)
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = self._last_used = clock()
        self._lock = threading.Lock()
        self.retired = False

    def _refill(self, now: float) -> None:
        # Caller holds self._lock.
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._last_refill = now

    def try_consume(self) -> bool | None:
        """Take one token if available.

        Returns True if admitted, False if throttled, None if the bucket was
        retired by a sweep (the caller must resolve the key again).
        """
        with self._lock:
            if self.retired:
                return None
            now = self._clock()
            self._refill(now)
            self._last_used = now
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def seconds_until_token(self) -> float:
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self.rate

    @property
    def tokens(self) -> float:
        """Current token count after refill (for inspection and tests)."""
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    def retire_if_idle(self, idle_seconds: float) -> bool:
        """Mark the bucket retired if it is full and untouched for idle_seconds."""
        with self._lock:
            now = self._clock()
            self._refill(now)
            if now - self._last_used >= idle_seconds and self._tokens >= self.capacity:
                self.retired = True
        return self.retired


class KeyedLimiter:
    """Map of key -> TokenBucket sharing one rate/capacity configuration."""

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float] = time.monotonic) -> None:
        if rate <= 0:
            raise ValueError("rate must be greater than 0")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}
        self._create_lock = threading.Lock()

    def bucket(self, key: str) -> TokenBucket:
        """Return the bucket for key, creating it (full) on first use."""
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket
        with self._create_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(self.rate, self.capacity, self._clock)
                self._buckets[key] = bucket
        return bucket

    def allow(self, key: str) -> bool:
        while True:
            admitted = self.bucket(key).try_consume()
            if admitted is not None:
                return admitted

    def retry_after(self, key: str) -> float:
        bucket = self._buckets.get(key)
        if bucket is None:
            return 0.0
        return bucket.seconds_until_token()

    def sweep(self, idle_seconds: float) -> int:
        """Evict idle, full buckets. Returns the number removed."""
        removed = 0
        with self._create_lock:
            for key, bucket in list(self._buckets.items()):
                if bucket.retire_if_idle(idle_seconds):
                    del self._buckets[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        return key in self._buckets


class RateLimiter:
    """Independent per-IP and per-identity throttles.

    Constructed once at startup (see RateLimiter.from_settings in the app
    lifespan) and owned by the RequestPipeline. Nothing reaches it through
    module globals.
    """

    def __init__(
        self,
        ip_rate: float = 5.0,
        ip_burst: int = 10,
        identity_rate: float = 10.0,
        identity_burst: int = 15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scopes: dict[Scope, KeyedLimiter] = {
            Scope.IP: KeyedLimiter(ip_rate, ip_burst, clock),
            Scope.IDENTITY: KeyedLimiter(identity_rate, identity_burst, clock),
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> RateLimiter:
        return cls(
            ip_rate=settings.ip_rate_per_second,
            ip_burst=settings.ip_burst,
            identity_rate=settings.identity_rate_per_second,
            identity_burst=settings.identity_burst,
        )

    def keyspace(self, scope: Scope | str) -> KeyedLimiter:
        return self._scopes[Scope(scope)]

    def allow(self, scope: Scope | str, key: str) -> bool:
        """Consume one token for (scope, key). False means the request is throttled."""
        allowed = self.keyspace(scope).allow(key)
        if not allowed:
            logger.info("Rate limit hit scope=%s key=%s", Scope(scope).value, key)
        return allowed

    def retry_after(self, scope: Scope | str, key: str) -> int:
        """Whole seconds until (scope, key) has a token again, at least 1."""
        return max(1, math.ceil(self.keyspace(scope).retry_after(key)))

    def sweep(self, idle_seconds: float) -> int:
        removed = sum(limiter.sweep(idle_seconds) for limiter in self._scopes.values())
        if removed:
            logger.info("Evicted %d idle rate-limit buckets", removed)
        return removed
