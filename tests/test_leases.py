from __future__ import annotations

import threading
import time

import pytest

from broker_adapters.contract import AdapterError, ConnectionLeaseManager, PoolExhausted, RetryableTransportError, default_config


def test_sessions_are_reused_after_release(fake_transport):
    transport = fake_transport()
    pool = ConnectionLeaseManager(transport, max_size=2)

    with pool.lease() as first:
        session = first.session
    with pool.lease() as second:
        assert second.session == session

    assert transport.opened == 1
    assert pool.stats()["idle"] == 1


def test_leases_are_exclusive_and_bounded(fake_transport):
    pool = ConnectionLeaseManager(fake_transport(), max_size=2)

    a = pool.acquire()
    b = pool.acquire()
    assert a.session != b.session
    with pytest.raises(PoolExhausted):
        pool.acquire(timeout=0.01)

    pool.release(a)
    c = pool.acquire(timeout=0.01)
    assert c.session == a.session
    assert pool.stats()["in_use"] == 2


def test_blocked_acquire_wakes_on_release(fake_transport):
    pool = ConnectionLeaseManager(fake_transport(), max_size=1)
    held = pool.acquire()
    acquired = []

    def _worker():
        lease = pool.acquire(timeout=5.0)
        acquired.append(lease)
        pool.release(lease)

    thread = threading.Thread(target=_worker)
    thread.start()
    pool.release(held)
    thread.join(timeout=5.0)

    assert len(acquired) == 1


def test_connection_failures_discard_the_session(fake_transport):
    transport = fake_transport()
    pool = ConnectionLeaseManager(transport, max_size=1)

    with pytest.raises(RetryableTransportError):
        with pool.lease():
            raise RetryableTransportError("socket closed")

    assert transport.closed == 1
    assert pool.stats()["idle"] == 0


def test_validate_on_borrow_replaces_unhealthy_sessions(fake_transport):
    transport = fake_transport()
    transport.test_connection = lambda session: session != "session-1"
    pool = ConnectionLeaseManager(transport, max_size=1, validate_on_borrow=True)

    with pool.lease():
        pass
    with pool.lease() as lease:
        assert lease.session == "session-2"
    assert transport.closed == 1


def test_idle_eviction_keeps_minimum(fake_transport, clock):
    transport = fake_transport()
    pool = ConnectionLeaseManager(transport, min_size=1, max_size=3, idle_timeout=10, clock=clock)
    leases = [pool.acquire() for _ in range(3)]
    for lease in leases:
        pool.release(lease)

    clock.advance(11)
    assert pool.evict_idle() == 2
    assert pool.stats()["size"] == 1


def test_warm_opens_minimum_sessions(fake_transport):
    transport = fake_transport()
    pool = ConnectionLeaseManager(transport, min_size=2, max_size=4)

    assert pool.warm() == 2
    assert pool.warm() == 0
    assert transport.opened == 2


def test_reconfigure_retires_old_generation(fake_transport):
    transport = fake_transport()
    pool = ConnectionLeaseManager(transport, max_size=1)
    with pool.lease():
        pass

    pool.reconfigure(default_config(maxPoolSize=3, connectionTimeoutMs=100), timeout=1.0)

    stats = pool.stats()
    assert stats["max_size"] == 3
    assert stats["generation"] == 1
    assert stats["idle"] == 0
    assert transport.closed == 1
    held = [pool.acquire() for _ in range(3)]
    assert len({lease.session for lease in held}) == 3


def test_lease_returned_after_reconfigure_is_closed(fake_transport):
    transport = fake_transport()
    pool = ConnectionLeaseManager(transport, max_size=2)
    lease = pool.acquire()

    pool.reconfigure(default_config(maxPoolSize=2), timeout=0.01)
    pool.release(lease)

    assert transport.closed == 1
    assert pool.stats()["idle"] == 0


def test_closed_pool_refuses_leases(fake_transport):
    transport = fake_transport()
    pool = ConnectionLeaseManager(transport, max_size=1)
    with pool.lease():
        pass

    pool.close(timeout=1.0)

    assert transport.closed == 1
    with pytest.raises(AdapterError):
        pool.acquire()


def test_from_config_maps_pool_options(fake_transport):
    config = default_config(minPoolSize=2, maxPoolSize=4, idleTimeoutMs=5000, connectionTimeoutMs=1500, validateOnBorrow=True)
    pool = ConnectionLeaseManager.from_config(fake_transport(), config, adapter_id="orders")

    assert (pool.min_size, pool.max_size, pool.idle_timeout, pool.acquire_timeout) == (2, 4, 5.0, 1.5)
    assert pool.validate_on_borrow


def test_drain_waits_for_outstanding_leases(fake_transport):
    pool = ConnectionLeaseManager(fake_transport(), max_size=1)
    held = pool.acquire()

    assert pool.drain(timeout=0.01) is False

    releaser = threading.Timer(0.05, pool.release, args=(held,))
    releaser.start()
    assert pool.drain(timeout=5.0) is True
    releaser.join()
    assert pool.stats()["in_use"] == 0


def test_lease_held_across_reconfigure_counts_against_new_cap(fake_transport):
    pool = ConnectionLeaseManager(fake_transport(), max_size=1)
    held = pool.acquire()

    pool.reconfigure(default_config(maxPoolSize=1, connectionTimeoutMs=100), timeout=0.01)

    with pytest.raises(PoolExhausted):
        pool.acquire(timeout=0.05)
    assert pool.stats()["in_use"] == 1

    pool.release(held)
    replacement = pool.acquire(timeout=0.05)
    assert replacement.generation == 1


def test_waiter_wakes_when_old_generation_lease_returns(fake_transport):
    pool = ConnectionLeaseManager(fake_transport(), max_size=1)
    held = pool.acquire()
    pool.reconfigure(default_config(maxPoolSize=1), timeout=0.01)

    releaser = threading.Timer(0.05, pool.release, args=(held,))
    releaser.start()
    lease = pool.acquire(timeout=5.0)
    releaser.join()

    assert lease.generation == 1
    assert pool.stats()["in_use"] == 1


def test_reaper_closes_idle_sessions_in_background(fake_transport):
    transport = fake_transport()
    pool = ConnectionLeaseManager(transport, min_size=0, max_size=2, idle_timeout=0.0)
    with pool.lease():
        pass

    pool.start_reaper(interval=0.01)
    try:
        for _ in range(200):
            if transport.closed:
                break
            time.sleep(0.01)
    finally:
        pool.close(timeout=1.0)

    assert transport.closed == 1
    assert pool.stats()["idle"] == 0
