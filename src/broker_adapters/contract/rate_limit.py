"""
Token-bucket rate limiting for outbound calls.

Social and SaaS APIs publish limits per second, minute and hour at the same time;
:class:`RateLimiter` therefore holds one :class:`TokenBucket` per tier and only
grants a request when every tier can pay for it.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .errors import RateLimited
from .options import EffectiveConfig


@dataclass(slots=True)
class TokenBucket:
    """
    Single refill tier.

    Parameters
    ----------
    capacity:
        Maximum tokens the bucket can hold; also the largest burst.
    refill_period:
        Seconds needed to refill ``capacity`` tokens from empty.
    """

    capacity: int
    refill_period: float
    tokens: float = -1.0
    updated_at: float = 0.0

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("Token bucket capacity must be at least 1.")
        if self.refill_period <= 0:
            raise ValueError("Token bucket refill period must be positive.")
        if self.tokens < 0:
            self.tokens = float(self.capacity)

    @property
    def rate(self) -> float:
        return self.capacity / self.refill_period

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate)
        self.updated_at = now

    def wait_time(self, tokens: int) -> float:
        missing = tokens - self.tokens
        return 0.0 if missing <= 0 else missing / self.rate


class RateLimiter:
    """Thread-safe multi-tier token bucket gate."""

    def __init__(
        self,
        buckets: Sequence[TokenBucket] = (),
        *,
        default_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self.default_timeout = default_timeout
        now = clock()
        self.buckets: List[TokenBucket] = []
        for bucket in buckets:
            bucket.updated_at = now
            self.buckets.append(bucket)

    @classmethod
    def from_config(cls, config: EffectiveConfig, **kwargs) -> "RateLimiter":
        tiers = []
        if config.rate_limit_per_second:
            tiers.append(TokenBucket(config.rate_limit_per_second, 1.0))
        if config.rate_limit_per_minute:
            tiers.append(TokenBucket(config.rate_limit_per_minute, 60.0))
        if config.rate_limit_per_hour:
            tiers.append(TokenBucket(config.rate_limit_per_hour, 3600.0))
        return cls(tiers, default_timeout=config.rate_limit_timeout_ms / 1000.0, **kwargs)

    @property
    def unlimited(self) -> bool:
        return not self.buckets

    def _try_take(self, tokens: int) -> float:
        """Take tokens if every tier can pay; otherwise return the time to wait."""

        with self._lock:
            now = self._clock()
            for bucket in self.buckets:
                bucket.refill(now)
            wait = max((bucket.wait_time(tokens) for bucket in self.buckets), default=0.0)
            if wait <= 0:
                for bucket in self.buckets:
                    bucket.tokens -= tokens
            return wait

    def _check_request(self, tokens: int) -> None:
        if tokens < 1:
            raise ValueError("At least one token must be requested.")
        for bucket in self.buckets:
            if tokens > bucket.capacity:
                raise ValueError(f"Requested {tokens} token(s) exceeds bucket capacity {bucket.capacity}.")

    def try_acquire(self, tokens: int = 1) -> bool:
        self._check_request(tokens)
        if self.unlimited:
            return True
        return self._try_take(tokens) <= 0

    def acquire(self, tokens: int = 1, timeout: Optional[float] = None) -> None:
        """
        Block until ``tokens`` are available in every tier.

        Raises :class:`RateLimited` when they cannot be granted within ``timeout``
        seconds (``None`` uses the configured default, which may itself be
        ``None`` for an unbounded wait).
        """

        self._check_request(tokens)
        if self.unlimited:
            return
        limit = self.default_timeout if timeout is None else timeout
        deadline = None if limit is None else self._clock() + limit
        while True:
            wait = self._try_take(tokens)
            if wait <= 0:
                return
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining < wait:
                    raise RateLimited(f"Rate limit reached; next token available in {wait:.2f}s.")
            self._sleep(wait)

    def available(self) -> float:
        """Tokens currently available in the tightest tier."""

        with self._lock:
            now = self._clock()
            for bucket in self.buckets:
                bucket.refill(now)
            return min((bucket.tokens for bucket in self.buckets), default=float("inf"))
