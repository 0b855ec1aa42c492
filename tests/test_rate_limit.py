from __future__ import annotations

import pytest

from broker_adapters.contract import RateLimited, RateLimiter, TokenBucket, default_config


def test_bucket_grants_burst_then_refills(clock):
    limiter = RateLimiter([TokenBucket(capacity=2, refill_period=1.0)], clock=clock, sleep=clock.sleep)

    assert limiter.try_acquire()
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    clock.advance(0.5)
    assert limiter.try_acquire()


def test_every_tier_must_grant(clock):
    limiter = RateLimiter([TokenBucket(10, 1.0), TokenBucket(3, 60.0)], clock=clock, sleep=clock.sleep)

    for _ in range(3):
        assert limiter.try_acquire()
    assert not limiter.try_acquire()
    assert limiter.available() == pytest.approx(0.0)


def test_acquire_sleeps_until_tokens_arrive(clock):
    limiter = RateLimiter([TokenBucket(1, 2.0)], clock=clock, sleep=clock.sleep)

    limiter.acquire()
    limiter.acquire(timeout=5.0)

    assert clock.sleeps == [pytest.approx(2.0)]


def test_acquire_times_out_with_rate_limited(clock):
    limiter = RateLimiter([TokenBucket(1, 60.0)], clock=clock, sleep=clock.sleep)
    limiter.acquire()

    with pytest.raises(RateLimited):
        limiter.acquire(timeout=1.0)
    assert clock.sleeps == []


def test_requests_larger_than_capacity_are_rejected(clock):
    limiter = RateLimiter([TokenBucket(2, 1.0)], clock=clock)

    with pytest.raises(ValueError):
        limiter.acquire(3)
    with pytest.raises(ValueError):
        limiter.try_acquire(0)


def test_from_config_builds_one_tier_per_limit():
    limiter = RateLimiter.from_config(default_config(rateLimitPerSecond=5, rateLimitPerHour=1000, rateLimitTimeoutMs=1500))

    assert [(bucket.capacity, bucket.refill_period) for bucket in limiter.buckets] == [(5, 1.0), (1000, 3600.0)]
    assert limiter.default_timeout == 1.5
    assert RateLimiter.from_config(default_config()).unlimited


def test_invalid_bucket_parameters():
    with pytest.raises(ValueError):
        TokenBucket(0, 1.0)
    with pytest.raises(ValueError):
        TokenBucket(1, 0)
