"""
Outbound delivery executor.

Records submitted for an outbound adapter accumulate in an open batch that is
sealed according to the configured :class:`BatchStrategy`. A sealed batch is
committed either atomically in one transport call or record by record behind a
high-water mark, so a partial failure resumes at the first uncommitted record
instead of re-sending what the target already accepted.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from logging import LoggerAdapter
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.logging import bind_adapter, get_logger, log_progress
from .atomic import AtomicState
from .dedup import DedupIndex, DedupKey, derive_key
from .errors import AdapterError, ErrorBudgetExceeded, Exhausted
from .leases import ConnectionLeaseManager
from .models import Batch, CommitResult, Record
from .options import BatchStrategy, EffectiveConfig, ErrorHandlingStrategy, TransactionPolicy
from .rate_limit import RateLimiter
from .retry import Deadline, ErrorBudget, RetryPolicy

LOGGER = get_logger(__name__)


class DeliveryState(str, Enum):
    IDLE = "idle"
    DELIVERING = "delivering"
    DISABLED = "disabled"


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    DELIVERED = "delivered"
    EMPTY = "empty"
    FAILED = "failed"
    DISABLED = "disabled"
    SKIPPED_BUSY = "skipped_busy"


@dataclass(slots=True)
class DeliveryOutcome:
    status: DeliveryStatus
    committed: int = 0
    duplicates: int = 0
    skipped: int = 0
    pending: int = 0
    references: List[str] = field(default_factory=list)
    error: Optional[BaseException] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "committed": self.committed,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "pending": self.pending,
            "references": list(self.references),
            "error": str(self.error) if self.error else None,
        }


@dataclass(slots=True)
class _PendingBatch:
    """Sealed batch, the index of the first record not yet committed and the dedup tokens already sent."""

    batch: Batch
    high_water_mark: int = 0
    seen: set[str] = field(default_factory=set)

    @property
    def remaining(self) -> int:
        return len(self.batch) - self.high_water_mark


class DeliveryExecutor:
    """
    Batch, commit and deduplicate outbound records for one adapter instance.

    Parameters
    ----------
    adapter_id:
        Identifier used for dedup and budget keys.
    transport:
        Outbound transport supplying ``deliver`` and ``supports_atomic_commit``.
    leases:
        Pool lending transport sessions.
    retry:
        Retry policy with the adapter's error budget.
    config:
        Effective configuration of the activation.
    rate_limiter:
        Optional token bucket consulted before every transport call.
    dedup:
        Dedup index used when ``idempotent`` is enabled.
    dead_letters:
        Destination for records dropped under ``SKIP_ERRORS`` or when the error
        budget trips.
    """

    def __init__(
        self,
        adapter_id: str,
        transport: Any,
        leases: ConnectionLeaseManager,
        retry: RetryPolicy,
        *,
        config: EffectiveConfig,
        rate_limiter: Optional[RateLimiter] = None,
        dedup: Optional[DedupIndex] = None,
        dead_letters: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if retry.budget is None:
            raise ValueError("DeliveryExecutor requires a retry policy with an error budget.")
        self.adapter_id = adapter_id
        self.transport = transport
        self.leases = leases
        self.retry = retry
        self.budget: ErrorBudget = retry.budget
        self.config = config
        self.rate_limiter = rate_limiter
        self.dedup = dedup if config.idempotent else None
        self.dead_letters = dead_letters
        self._clock = clock
        self._state: AtomicState[DeliveryState] = AtomicState(DeliveryState.DISABLED if self.budget.disabled else DeliveryState.IDLE)
        self._buffer_lock = threading.Lock()
        self._open: List[Record] = []
        self._opened_at: Optional[float] = None
        self._pending: Optional[_PendingBatch] = None
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        self.last_outcome: Optional[DeliveryOutcome] = None
        self.logger: LoggerAdapter = bind_adapter(LOGGER, adapter_id)

    @property
    def state(self) -> DeliveryState:
        return self._state.get()

    @property
    def atomic(self) -> bool:
        return bool(getattr(self.transport, "supports_atomic_commit", False)) and self.config.transaction_policy == TransactionPolicy.BATCH

    def open_count(self) -> int:
        with self._buffer_lock:
            return len(self._open)

    def pending_count(self) -> int:
        pending = self._pending
        return pending.remaining if pending is not None else 0

    # ------------------------------------------------------------------ batching

    def _size_reached(self, size: int) -> bool:
        strategy = self.config.batch_strategy
        if not self.config.enable_batching:
            return True
        if strategy in (BatchStrategy.SIZE_BASED, BatchStrategy.MIXED):
            return size >= self.config.batch_size
        if strategy == BatchStrategy.TIME_BASED:
            return False
        raise ValueError(f"Unhandled batch strategy: {strategy!r}")

    def _timeout_reached(self, now: float) -> bool:
        strategy = self.config.batch_strategy
        if self._opened_at is None:
            return False
        if strategy in (BatchStrategy.TIME_BASED, BatchStrategy.MIXED):
            return now - self._opened_at >= self.config.batch_timeout_ms / 1000.0
        if strategy == BatchStrategy.SIZE_BASED:
            return False
        raise ValueError(f"Unhandled batch strategy: {strategy!r}")

    def submit(self, record: Record) -> DeliveryOutcome:
        """Queue ``record``; flushes immediately when the size bound is reached."""

        if self.budget.disabled:
            self._state.set(DeliveryState.DISABLED)
            return DeliveryOutcome(DeliveryStatus.DISABLED)
        with self._buffer_lock:
            if not self._open:
                self._opened_at = self._clock()
            self._open.append(record)
            size = len(self._open)
        if self._size_reached(size):
            return self.flush()
        return DeliveryOutcome(DeliveryStatus.QUEUED, pending=size)

    def flush_due(self, now: Optional[float] = None) -> Optional[DeliveryOutcome]:
        """Timer hook: retry a failed batch or flush an open batch whose time bound elapsed."""

        moment = self._clock() if now is None else now
        if self._pending is not None:
            return self.flush()
        with self._buffer_lock:
            due = bool(self._open) and self._timeout_reached(moment)
        return self.flush() if due else None

    def _seal(self) -> Optional[_PendingBatch]:
        with self._buffer_lock:
            if not self._open:
                return None
            records, self._open = self._open, []
            self._opened_at = None
        return _PendingBatch(Batch(records=records))

    # ------------------------------------------------------------------ committing

    def flush(self) -> DeliveryOutcome:
        """
        Commit the pending batch, or seal and commit the open one.

        Only one flush runs at a time; a concurrent call returns
        ``SKIPPED_BUSY`` and leaves its records for the next flush.
        """

        if self.budget.disabled:
            self._state.set(DeliveryState.DISABLED)
            return self._finish(DeliveryOutcome(DeliveryStatus.DISABLED))
        if self._state.get() == DeliveryState.DISABLED:
            self._state.compare_and_set(DeliveryState.DISABLED, DeliveryState.IDLE)
        if not self._state.compare_and_set(DeliveryState.IDLE, DeliveryState.DELIVERING):
            return self._finish(DeliveryOutcome(DeliveryStatus.SKIPPED_BUSY))

        try:
            if self._pending is None:
                self._pending = self._seal()
            if self._pending is None:
                return self._finish(DeliveryOutcome(DeliveryStatus.EMPTY))
            return self._finish(self._commit(self._pending))
        finally:
            self._state.compare_and_set(DeliveryState.DELIVERING, DeliveryState.IDLE)

    def _finish(self, outcome: DeliveryOutcome) -> DeliveryOutcome:
        self.last_outcome = outcome
        return outcome

    def _commit(self, pending: _PendingBatch) -> DeliveryOutcome:
        outcome = DeliveryOutcome(DeliveryStatus.DELIVERED)
        deadline = Deadline.after(self.config.operation_timeout, clock=self._clock)
        try:
            if self.atomic:
                self._commit_atomic(pending, outcome, deadline)
            else:
                self._commit_sequential(pending, outcome, deadline)
        except ErrorBudgetExceeded as exc:
            self._reject_remaining(pending, str(exc))
            self._pending = None
            self._state.set(DeliveryState.DISABLED)
            outcome.status = DeliveryStatus.DISABLED
            outcome.error = exc
            log_progress(self.logger, "Adapter disabled by error budget", phase="deliver", state="disabled", extra={"error_class": exc.error_class.value})
            return outcome
        except AdapterError as exc:
            outcome.status = DeliveryStatus.FAILED
            outcome.error = exc
            outcome.pending = pending.remaining
            self.logger.warning(
                "Delivery failed; batch kept for the next flush",
                extra={"batch_size": len(pending.batch), "committed": pending.high_water_mark, "error_class": exc.error_class.value},
            )
            return outcome

        self._pending = None
        log_progress(
            self.logger,
            "Batch delivered",
            phase="deliver",
            status=outcome.status.value,
            extra={"batch_size": len(pending.batch), "records": outcome.committed, "duplicates": outcome.duplicates or None},
        )
        return outcome

    def _key(self, record: Record) -> DedupKey:
        return derive_key(
            record,
            self.config.idempotency_strategy,
            algorithm=self.config.checksum_algorithm,
            key_fields=self.config.dedup_key_fields,
        )

    def _claim(self, key: DedupKey) -> bool:
        """Add ``key`` to the in-flight set; ``False`` when it is already being delivered or was delivered."""

        with self._in_flight_lock:
            if key.token in self._in_flight:
                return False
            if self.dedup is not None and self.dedup.contains(key):
                return False
            self._in_flight.add(key.token)
            return True

    def _unclaim(self, keys: Sequence[DedupKey]) -> None:
        with self._in_flight_lock:
            for key in keys:
                self._in_flight.discard(key.token)

    def _deliver(self, batch: Batch, deadline: Deadline) -> CommitResult:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()
        with self.leases.lease() as lease:
            return self.transport.deliver(lease.session, batch, timeout=deadline.remaining())

    def _commit_atomic(self, pending: _PendingBatch, outcome: DeliveryOutcome, deadline: Deadline) -> None:
        records = pending.batch.records[pending.high_water_mark :]
        claimed: List[DedupKey] = []
        to_send: List[Record] = []
        try:
            for record in records:
                try:
                    key = self._key(record)
                except AdapterError as exc:
                    self.budget.record_failure(exc.error_class)
                    self._on_failure([record], exc, outcome)
                    continue
                if not self._claim(key):
                    outcome.duplicates += 1
                    continue
                claimed.append(key)
                to_send.append(record)
            if to_send:
                batch = Batch(records=to_send, start_cursor=pending.batch.start_cursor, end_cursor=pending.batch.end_cursor, batch_id=pending.batch.batch_id)
                try:
                    result = self.retry.execute(partial(self._deliver, batch, deadline), operation_name="deliver", deadline=deadline)
                except Exhausted as exc:
                    self._on_failure(to_send, exc, outcome)
                else:
                    outcome.committed += result.committed
                    outcome.references.extend(result.references)
                    if self.dedup is not None:
                        self.dedup.insert_many(claimed)
        finally:
            self._unclaim(claimed)
        pending.high_water_mark = len(pending.batch)

    def _commit_sequential(self, pending: _PendingBatch, outcome: DeliveryOutcome, deadline: Deadline) -> None:
        records = pending.batch.records
        while pending.high_water_mark < len(records):
            deadline.check("deliver")
            record = records[pending.high_water_mark]
            try:
                key = self._key(record)
            except AdapterError as exc:
                self.budget.record_failure(exc.error_class)
                self._on_failure([record], exc, outcome)
                pending.high_water_mark += 1
                continue
            if key.token in pending.seen or not self._claim(key):
                outcome.duplicates += 1
                pending.high_water_mark += 1
                continue
            try:
                single = Batch(records=[record], batch_id=pending.batch.batch_id)
                result = self.retry.execute(partial(self._deliver, single, deadline), operation_name="deliver", deadline=deadline)
            except Exhausted as exc:
                self._on_failure([record], exc, outcome)
            else:
                outcome.committed += result.committed
                outcome.references.extend(result.references)
                if self.dedup is not None:
                    self.dedup.insert(key)
            finally:
                self._unclaim([key])
            pending.seen.add(key.token)
            pending.high_water_mark += 1

    def _on_failure(self, records: Sequence[Record], exc: AdapterError, outcome: DeliveryOutcome) -> None:
        strategy = self.config.error_handling
        if strategy == ErrorHandlingStrategy.FAIL_FAST:
            raise exc
        outcome.skipped += len(records)
        if strategy == ErrorHandlingStrategy.SKIP_ERRORS:
            for record in records:
                self._reject(record, str(exc))
        elif strategy == ErrorHandlingStrategy.LOG_AND_CONTINUE:
            self.logger.error("Delivery failed; continuing", extra={"records": len(records), "error": str(exc)})
        else:
            raise ValueError(f"Unhandled error handling strategy: {strategy!r}")

    def _reject(self, record: Record, reason: str) -> None:
        if self.dead_letters is not None:
            self.dead_letters.reject(self.adapter_id, record, reason)
        self.logger.warning("Record moved to dead letters", extra={"record_id": record.record_id, "error": reason})

    def _reject_remaining(self, pending: _PendingBatch, reason: str) -> None:
        for record in pending.batch.records[pending.high_water_mark :]:
            self._reject(record, reason)

    # ------------------------------------------------------------------ operator actions

    def rearm(self) -> None:
        self.budget.rearm()
        self._state.set(DeliveryState.IDLE)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "open": self.open_count(),
            "pending": self.pending_count(),
            "atomic": self.atomic,
            "retry": self.retry.state.to_dict(),
            "budget": self.budget.snapshot(),
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }
