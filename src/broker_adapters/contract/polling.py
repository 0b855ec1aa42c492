"""
Inbound polling scheduler.

One :class:`PollingScheduler` drives one inbound adapter instance. Each tick
fetches bounded batches after the persisted cursor, hands every record to the
workflow engine in fetch order and only then advances the cursor, giving
at-least-once delivery: a crash mid hand-off replays the batch on restart and the
dedup index hides the replay downstream.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from logging import LoggerAdapter
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from ..core.logging import bind_adapter, get_logger, log_progress
from .atomic import AtomicState
from .cursors import CursorStore
from .dedup import DedupIndex, DedupKey, derive_key
from .errors import AdapterError, ErrorBudgetExceeded, Exhausted, HandOffRejected, classify_error
from .leases import ConnectionLeaseManager
from .models import Batch, Cursor, Record
from .options import EffectiveConfig, ErrorHandlingStrategy
from .retry import Deadline, ErrorBudget, RetryPolicy

LOGGER = get_logger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    HANDING_OFF = "handing_off"
    BACKOFF = "backoff"
    DISABLED = "disabled"


class TickStatus(str, Enum):
    COMPLETED = "completed"
    EMPTY = "empty"
    FAILED = "failed"
    DISABLED = "disabled"
    SKIPPED_BUSY = "skipped_busy"
    SKIPPED_BACKOFF = "skipped_backoff"
    SKIPPED_DISABLED = "skipped_disabled"


@dataclass(slots=True)
class PollOutcome:
    """Summary of a single :meth:`PollingScheduler.tick`."""

    status: TickStatus
    batches: int = 0
    handed_off: int = 0
    duplicates: int = 0
    skipped: int = 0
    cursor: Optional[Cursor] = None
    error: Optional[BaseException] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "batches": self.batches,
            "handed_off": self.handed_off,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "cursor": self.cursor.to_dict() if self.cursor else None,
            "error": str(self.error) if self.error else None,
        }


class PollingScheduler:
    """
    State machine ``IDLE -> FETCHING -> HANDING_OFF -> IDLE`` with ``BACKOFF`` and ``DISABLED``.

    Parameters
    ----------
    adapter_id:
        Identifier used for cursor, dedup and budget keys.
    transport:
        Inbound transport supplying ``fetch`` and optionally ``acknowledge``.
    leases:
        Pool lending transport sessions.
    sink:
        Workflow engine collaborator receiving records via ``hand_off``.
    cursors:
        Cursor persistence.
    retry:
        Retry policy wrapping fetch and hand-off calls; its error budget decides
        when the adapter is disabled.
    config:
        Effective configuration of the activation.
    dedup:
        Optional dedup index; when supplied, already-seen records are dropped.
    dead_letters:
        Optional sink for records skipped under ``SKIP_ERRORS``.
    clock:
        Monotonic clock used for backoff and deadlines.
    """

    def __init__(
        self,
        adapter_id: str,
        transport: Any,
        leases: ConnectionLeaseManager,
        sink: Any,
        cursors: CursorStore,
        retry: RetryPolicy,
        *,
        config: EffectiveConfig,
        dedup: Optional[DedupIndex] = None,
        dead_letters: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if retry.budget is None:
            raise ValueError("PollingScheduler requires a retry policy with an error budget.")
        self.adapter_id = adapter_id
        self.transport = transport
        self.leases = leases
        self.sink = sink
        self.cursors = cursors
        self.retry = retry
        self.budget: ErrorBudget = retry.budget
        self.config = config
        self.dedup = dedup
        self.dead_letters = dead_letters
        self._clock = clock
        self._state: AtomicState[SchedulerState] = AtomicState(SchedulerState.DISABLED if self.budget.disabled else SchedulerState.IDLE)
        self._backoff_until = 0.0
        self._failed_ticks = 0
        self._cron_invalid = False
        self.last_outcome: Optional[PollOutcome] = None
        self.logger: LoggerAdapter = bind_adapter(LOGGER, adapter_id)

    @property
    def state(self) -> SchedulerState:
        return self._state.get()

    def activate(self) -> None:
        """Apply activation-time options such as ``resetIncrementalOnStart``."""

        if self.config.reset_incremental_on_start:
            self.cursors.reset(self.adapter_id)

    # ------------------------------------------------------------------ scheduling

    def next_fire_time(self, after: float) -> float:
        """
        Epoch seconds of the next tick after ``after``.

        A cron ``pollingSchedule`` takes precedence; an invalid expression falls
        back to ``pollingInterval`` and is reported once.
        """

        interval = self.config.polling_interval_ms / 1000.0
        expression = self.config.polling_schedule
        if expression and not self._cron_invalid:
            if croniter.is_valid(expression):
                base = datetime.fromtimestamp(after, tz=timezone.utc)
                return float(croniter(expression, base).get_next(float))
            self._cron_invalid = True
            self.logger.warning("Invalid pollingSchedule; falling back to pollingInterval", extra={"schedule": expression, "interval": interval})
        return after + interval

    # ------------------------------------------------------------------ ticking

    def tick(self, now: Optional[float] = None) -> PollOutcome:
        """
        Run one polling cycle unless another one is in flight.

        A tick arriving while the scheduler is not ``IDLE`` is skipped, never
        queued, so at most one fetch is in flight per adapter instance.
        """

        moment = self._clock() if now is None else now
        if self.budget.disabled:
            self._state.set(SchedulerState.DISABLED)
            return self._finish(PollOutcome(TickStatus.SKIPPED_DISABLED))
        if self._state.get() == SchedulerState.DISABLED:
            # budget was re-armed externally
            self._state.compare_and_set(SchedulerState.DISABLED, SchedulerState.IDLE)
        if self._state.get() == SchedulerState.BACKOFF:
            if moment < self._backoff_until:
                return self._finish(PollOutcome(TickStatus.SKIPPED_BACKOFF))
            self._state.compare_and_set(SchedulerState.BACKOFF, SchedulerState.IDLE)
        if not self._state.compare_and_set(SchedulerState.IDLE, SchedulerState.FETCHING):
            return self._finish(PollOutcome(TickStatus.SKIPPED_BUSY))

        outcome = PollOutcome(TickStatus.COMPLETED)
        try:
            self._run(outcome)
        except ErrorBudgetExceeded as exc:
            outcome.status = TickStatus.DISABLED
            outcome.error = exc
            self._state.set(SchedulerState.DISABLED)
            log_progress(self.logger, "Adapter disabled by error budget", phase="poll", state="disabled", extra={"error_class": exc.error_class.value})
            return self._finish(outcome)
        except Exception as exc:
            outcome.status = TickStatus.FAILED
            outcome.error = exc
            self._enter_backoff(moment, exc)
            return self._finish(outcome)

        self._failed_ticks = 0
        self._state.set(SchedulerState.IDLE)
        if not outcome.batches:
            outcome.status = TickStatus.EMPTY
        else:
            log_progress(
                self.logger,
                "Poll completed",
                phase="poll",
                status=outcome.status.value,
                extra={"batch_size": outcome.batches, "records": outcome.handed_off, "cursor": str(outcome.cursor) if outcome.cursor else None},
            )
        return self._finish(outcome)

    def _finish(self, outcome: PollOutcome) -> PollOutcome:
        self.last_outcome = outcome
        return outcome

    def _run(self, outcome: PollOutcome) -> None:
        for _ in range(self.config.max_batches_per_poll):
            self._state.set(SchedulerState.FETCHING)
            cursor = self.cursors.load(self.adapter_id)
            deadline = Deadline.after(self.config.operation_timeout, clock=self._clock)
            batch: Batch = self.retry.execute(partial(self._fetch, cursor, deadline), operation_name="fetch", deadline=deadline)
            if batch.is_empty:
                return

            self._state.set(SchedulerState.HANDING_OFF)
            keys = self._hand_off(batch, deadline, outcome)

            terminal = batch.terminal_cursor
            if self.cursors.advance(self.adapter_id, terminal):
                outcome.cursor = terminal
            if self.dedup is not None and keys:
                self.dedup.insert_many(keys)
            self._acknowledge(batch)
            outcome.batches += 1
            if len(batch) < self.config.max_batch_size:
                return

    def _fetch(self, cursor: Optional[Cursor], deadline: Deadline) -> Batch:
        with self.leases.lease() as lease:
            batch = self.transport.fetch(lease.session, cursor, self.config.max_batch_size, timeout=deadline.remaining())
        self.logger.debug("Fetched batch", extra={"cursor": str(cursor) if cursor else None, "batch_size": len(batch)})
        return batch

    def _hand_off(self, batch: Batch, deadline: Deadline, outcome: PollOutcome) -> List[DedupKey]:
        keys: List[DedupKey] = []
        seen: set[str] = set()
        for record in batch:
            deadline.check("hand_off")
            key: Optional[DedupKey] = None
            if self.dedup is not None:
                try:
                    key = derive_key(
                        record,
                        self.config.duplicate_detection_strategy,
                        algorithm=self.config.checksum_algorithm,
                        key_fields=self.config.dedup_key_fields,
                    )
                except AdapterError as exc:
                    self.budget.record_failure(exc.error_class)
                    self._on_record_failure(record, exc, outcome)
                    continue
                if key.token in seen or self.dedup.contains(key):
                    outcome.duplicates += 1
                    self.logger.debug("Dropping duplicate record", extra={"record_id": record.record_id})
                    continue

            try:
                self.retry.execute(partial(self._deliver_to_sink, record), operation_name="hand_off", deadline=deadline, guarded=False)
            except Exhausted as exc:
                self._on_record_failure(record, exc, outcome)
                continue

            outcome.handed_off += 1
            if key is not None:
                seen.add(key.token)
                keys.append(key)
        return keys

    def _deliver_to_sink(self, record: Record) -> None:
        ack = self.sink.hand_off(record)
        if ack is True or getattr(ack, "value", ack) == "ack":
            return
        raise HandOffRejected(f"Sink rejected record '{record.record_id}'.")

    def _on_record_failure(self, record: Record, exc: AdapterError, outcome: PollOutcome) -> None:
        strategy = self.config.error_handling
        if strategy == ErrorHandlingStrategy.FAIL_FAST:
            raise exc
        outcome.skipped += 1
        if strategy == ErrorHandlingStrategy.SKIP_ERRORS:
            if self.dead_letters is not None:
                self.dead_letters.reject(self.adapter_id, record, str(exc))
            self.logger.warning("Skipped failing record", extra={"record_id": record.record_id, "error": str(exc)})
        elif strategy == ErrorHandlingStrategy.LOG_AND_CONTINUE:
            self.logger.error("Record hand-off failed; continuing", extra={"record_id": record.record_id, "error": str(exc)})
        else:
            raise ValueError(f"Unhandled error handling strategy: {strategy!r}")

    def _acknowledge(self, batch: Batch) -> None:
        acknowledge = getattr(self.transport, "acknowledge", None)
        if acknowledge is None:
            return
        try:
            with self.leases.lease() as lease:
                acknowledge(lease.session, batch)
        except Exception as exc:
            # The cursor already moved; a failed post-commit action must not replay the batch.
            self.logger.warning("Post-commit acknowledge failed", extra={"batch_size": len(batch), "error": str(exc)})

    def _enter_backoff(self, moment: float, exc: BaseException) -> None:
        self._failed_ticks += 1
        base = self.config.retry_delay_ms / 1000.0
        if self.config.use_exponential_backoff:
            delay = base * self.config.backoff_multiplier ** (self._failed_ticks - 1)
        else:
            delay = base
        delay = min(delay, self.config.max_retry_delay_ms / 1000.0)
        self._backoff_until = moment + delay
        self._state.set(SchedulerState.BACKOFF)
        error_class = classify_error(exc, self.config.retryable_error_codes)[0]
        log_progress(
            self.logger,
            "Poll failed; backing off",
            phase="poll",
            state="backoff",
            level=logging.WARNING,
            extra={"delay": delay, "attempt": self._failed_ticks, "error_class": error_class.value, "error": str(exc)},
        )

    # ------------------------------------------------------------------ operator actions

    def rearm(self) -> None:
        self.budget.rearm()
        self._failed_ticks = 0
        self._backoff_until = 0.0
        self._state.set(SchedulerState.IDLE)

    def reset_cursor(self, cursor: Optional[Cursor] = None) -> None:
        self.cursors.reset(self.adapter_id, cursor)

    def snapshot(self) -> Dict[str, Any]:
        cursor = self.cursors.load(self.adapter_id)
        return {
            "state": self.state.value,
            "cursor": cursor.to_dict() if cursor else None,
            "retry": self.retry.state.to_dict(),
            "budget": self.budget.snapshot(),
            "backoff_remaining": max(0.0, self._backoff_until - self._clock()) if self.state == SchedulerState.BACKOFF else 0.0,
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }
