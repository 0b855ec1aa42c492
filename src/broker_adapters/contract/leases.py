"""
Pooled transport sessions with exclusive leases.

The pool grows lazily up to ``maxPoolSize`` sessions, keeps ``minPoolSize`` warm
sessions once :meth:`ConnectionLeaseManager.warm` ran, and closes sessions idle
for longer than ``idleTimeoutMs``. A reconfiguration bumps the pool generation so
sessions opened under the previous configuration are never handed out again.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from logging import LoggerAdapter
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, Iterator, List, Optional

from ..core.logging import bind_adapter, get_logger
from .errors import AdapterError, ErrorClass, PoolExhausted, classify_error
from .options import EffectiveConfig

if TYPE_CHECKING:
    from ..adapters.base import Transport

LOGGER = get_logger(__name__)

_DISCARD_CLASSES = frozenset({ErrorClass.CONNECTION, ErrorClass.TIMEOUT, ErrorClass.CANCELLED, ErrorClass.AUTHENTICATION})


@dataclass(slots=True)
class ConnectionLease:
    """Exclusive handle to a pooled transport session."""

    lease_id: int
    session: Any
    generation: int
    acquired_at: float


@dataclass(slots=True)
class _PooledSession:
    session: Any
    generation: int
    last_used: float


class ConnectionLeaseManager:
    """
    Bounded pool of sessions opened through a :class:`~broker_adapters.adapters.base.Transport`.

    Parameters
    ----------
    transport:
        Supplies ``open``/``close``/``test_connection``.
    min_size:
        Sessions kept warm after :meth:`warm`; idle eviction never drops below it.
    max_size:
        Upper bound on concurrently outstanding leases.
    idle_timeout:
        Seconds after which an idle session is closed.
    acquire_timeout:
        Default wait for :meth:`acquire` when no explicit timeout is given.
    validate_on_borrow:
        Run ``test_connection`` on idle sessions before lending them.
    """

    def __init__(
        self,
        transport: "Transport",
        *,
        min_size: int = 1,
        max_size: int = 5,
        idle_timeout: float = 300.0,
        acquire_timeout: float = 30.0,
        validate_on_borrow: bool = False,
        adapter_id: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1.")
        self.transport = transport
        self.min_size = min(min_size, max_size)
        self.max_size = max_size
        self.idle_timeout = idle_timeout
        self.acquire_timeout = acquire_timeout
        self.validate_on_borrow = validate_on_borrow
        self.adapter_id = adapter_id
        self._clock = clock
        self._cond = threading.Condition()
        self._in_use = 0
        self._idle: Deque[_PooledSession] = deque()
        self._outstanding: Dict[int, ConnectionLease] = {}
        self._ids = itertools.count(1)
        self._generation = 0
        self._created = 0
        self._draining = False
        self._closed = False
        self._reaper: Optional[threading.Thread] = None
        self._reaper_stop = threading.Event()
        self.logger: LoggerAdapter = bind_adapter(LOGGER, adapter_id) if adapter_id else LOGGER

    @classmethod
    def from_config(cls, transport: "Transport", config: EffectiveConfig, *, adapter_id: str = "", **kwargs: Any) -> "ConnectionLeaseManager":
        return cls(
            transport,
            min_size=config.min_pool_size,
            max_size=config.max_pool_size,
            idle_timeout=config.idle_timeout_ms / 1000.0,
            acquire_timeout=config.connection_timeout,
            validate_on_borrow=config.validate_on_borrow,
            adapter_id=adapter_id,
            **kwargs,
        )

    def acquire(self, timeout: Optional[float] = None) -> ConnectionLease:
        """
        Lend a session exclusively to the caller.

        Blocks up to ``timeout`` seconds for a free slot and raises
        :class:`PoolExhausted` when none became available. The error is left to
        the caller's retry policy.
        """

        wait = max(0.0, self.acquire_timeout if timeout is None else timeout)
        expires_at = time.monotonic() + wait
        with self._cond:
            while True:
                if self._closed:
                    raise AdapterError("Connection pool is closed.")
                if self._draining:
                    raise PoolExhausted("Connection pool is draining for reconfiguration.")
                # Leases from earlier generations still count against the current cap.
                if self._in_use < self.max_size:
                    break
                remaining = expires_at - time.monotonic()
                if remaining <= 0:
                    raise PoolExhausted(f"No connection available within {wait:.2f}s (max {self.max_size}).")
                self._cond.wait(remaining)
            self._in_use += 1
            generation = self._generation

        try:
            session = self._borrow_idle(generation)
            if session is None:
                session = self.transport.open()
                with self._cond:
                    self._created += 1
                self.logger.debug("Opened transport session", extra={"generation": generation})
        except BaseException:
            with self._cond:
                self._in_use -= 1
                self._cond.notify_all()
            raise

        lease = ConnectionLease(lease_id=next(self._ids), session=session, generation=generation, acquired_at=self._clock())
        with self._cond:
            self._outstanding[lease.lease_id] = lease
        return lease

    def _borrow_idle(self, generation: int) -> Optional[Any]:
        while True:
            with self._cond:
                if not self._idle:
                    return None
                pooled = self._idle.pop()
            if pooled.generation != generation:
                self._close_session(pooled.session)
                continue
            if self.validate_on_borrow and not self._is_healthy(pooled.session):
                self.logger.info("Discarding session that failed validation")
                self._close_session(pooled.session)
                continue
            return pooled.session

    def _is_healthy(self, session: Any) -> bool:
        try:
            return bool(self.transport.test_connection(session))
        except Exception as exc:
            self.logger.debug("Session validation raised", extra={"error": str(exc)})
            return False

    def release(self, lease: ConnectionLease, *, discard: bool = False) -> None:
        """Return a lease; ``discard`` closes the session instead of pooling it."""

        with self._cond:
            if self._outstanding.pop(lease.lease_id, None) is None:
                return
            stale = discard or self._closed or lease.generation != self._generation
            if not stale:
                self._idle.append(_PooledSession(lease.session, lease.generation, self._clock()))
            self._in_use -= 1
            self._cond.notify_all()
        if stale:
            self._close_session(lease.session)

    @contextmanager
    def lease(self, timeout: Optional[float] = None) -> Iterator[ConnectionLease]:
        """Scoped lease; sessions whose operation failed at the connection level are discarded."""

        handle = self.acquire(timeout)
        discard = False
        try:
            yield handle
        except BaseException as exc:
            discard = classify_error(exc)[0] in _DISCARD_CLASSES
            raise
        finally:
            self.release(handle, discard=discard)

    def warm(self) -> int:
        """Open sessions until ``min_size`` are available; returns how many were opened."""

        opened = 0
        while True:
            with self._cond:
                if self._closed or len(self._idle) + len(self._outstanding) >= self.min_size:
                    return opened
                generation = self._generation
            session = self.transport.open()
            with self._cond:
                self._created += 1
                self._idle.append(_PooledSession(session, generation, self._clock()))
            opened += 1

    def evict_idle(self, now: Optional[float] = None) -> int:
        """Close sessions idle longer than ``idle_timeout`` while keeping ``min_size`` alive."""

        moment = self._clock() if now is None else now
        victims: List[Any] = []
        with self._cond:
            keep: Deque[_PooledSession] = deque()
            size = len(self._idle) + len(self._outstanding)
            for pooled in self._idle:
                expired = moment - pooled.last_used >= self.idle_timeout
                if (expired and size > self.min_size) or pooled.generation != self._generation:
                    victims.append(pooled.session)
                    size -= 1
                else:
                    keep.append(pooled)
            self._idle = keep
        for session in victims:
            self._close_session(session)
        if victims:
            self.logger.debug("Evicted idle sessions", extra={"records": len(victims)})
        return len(victims)

    def start_reaper(self, interval: Optional[float] = None) -> None:
        """Close idle sessions asynchronously every ``interval`` seconds."""

        if self._reaper is not None:
            return
        period = interval or max(1.0, min(self.idle_timeout / 2.0, 60.0))

        def _run() -> None:
            while not self._reaper_stop.wait(period):
                self.evict_idle()

        self._reaper = threading.Thread(target=_run, name=f"lease-reaper-{self.adapter_id or id(self)}", daemon=True)
        self._reaper.start()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for outstanding leases to come back; returns ``False`` on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._outstanding:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def reconfigure(self, config: EffectiveConfig, *, timeout: Optional[float] = None) -> None:
        """
        Apply a new effective configuration.

        New acquisitions are refused while in-flight leases drain; afterwards the
        pool generation is bumped, idle sessions are closed and the new sizes take
        effect. Leases still out after ``timeout`` are closed when released.
        """

        with self._cond:
            self._draining = True
        try:
            drained = self.drain(timeout)
            with self._cond:
                self._generation += 1
                self.min_size = min(config.min_pool_size, config.max_pool_size)
                self.max_size = config.max_pool_size
                self.idle_timeout = config.idle_timeout_ms / 1000.0
                self.acquire_timeout = config.connection_timeout
                self.validate_on_borrow = config.validate_on_borrow
                victims = [pooled.session for pooled in self._idle]
                self._idle.clear()
        finally:
            with self._cond:
                self._draining = False
        for session in victims:
            self._close_session(session)
        if not drained:
            self.logger.warning("Pool reconfigured before all leases were returned", extra={"outstanding": len(self._outstanding)})
        self.logger.info("Connection pool reconfigured", extra={"generation": self._generation, "max_size": self.max_size})

    def close(self, timeout: Optional[float] = None) -> None:
        self._reaper_stop.set()
        if self._reaper is not None:
            self._reaper.join(timeout=1.0)
            self._reaper = None
        self.drain(timeout)
        with self._cond:
            self._closed = True
            self._cond.notify_all()
            victims = [pooled.session for pooled in self._idle]
            self._idle.clear()
        for session in victims:
            self._close_session(session)

    def _close_session(self, session: Any) -> None:
        try:
            self.transport.close(session)
        except Exception as exc:
            self.logger.warning("Failed to close transport session", extra={"error": str(exc)})

    def stats(self) -> Dict[str, int]:
        with self._cond:
            return {
                "size": len(self._idle) + len(self._outstanding),
                "idle": len(self._idle),
                "in_use": len(self._outstanding),
                "max_size": self.max_size,
                "generation": self._generation,
                "created": self._created,
            }
