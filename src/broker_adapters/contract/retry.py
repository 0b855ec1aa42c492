"""
Retry, circuit breaking and error budgets shared by every transport call.

:class:`RetryPolicy` wraps an operation in a tenacity ``Retrying`` loop tuned from
the adapter configuration. Failures that survive the retry loop, or that are not
retryable at all, are charged to the adapter's :class:`ErrorBudget`; crossing the
budget threshold disables the adapter until an operator re-arms it.
"""

from __future__ import annotations

import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from logging import LoggerAdapter
from typing import Any, Callable, Deque, Dict, Optional, Sequence, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, stop_any, wait_exponential, wait_fixed

from ..core.logging import bind_adapter, get_logger
from .errors import CircuitOpen, ErrorBudgetExceeded, ErrorClass, Exhausted, OperationCancelled, classify_error
from .options import EffectiveConfig
from .stores import StateStore

T = TypeVar("T")

LOGGER = get_logger(__name__)


@dataclass(slots=True)
class Deadline:
    """Cooperative cancellation point shared by a fetch or delivery and its retries."""

    expires_at: float
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def after(cls, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(expires_at=clock() + seconds, clock=clock)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    def expired(self) -> bool:
        return self.clock() >= self.expires_at

    def check(self, operation: str) -> None:
        if self.expired():
            raise OperationCancelled(f"Deadline elapsed during '{operation}'.")


@dataclass(slots=True)
class RetryState:
    """Counters describing the most recent :meth:`RetryPolicy.execute` call."""

    attempts: int = 0
    consecutive_failures: int = 0
    last_error_class: Optional[ErrorClass] = None
    delays: Sequence[float] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "consecutive_failures": self.consecutive_failures,
            "last_error_class": self.last_error_class.value if self.last_error_class else None,
        }


class ErrorBudget:
    """
    Sliding-window failure counter for one adapter instance.

    Parameters
    ----------
    adapter_id:
        Owner of the budget; used as the persistence key.
    threshold:
        Maximum number of failures tolerated inside the window. The budget trips
        when the count exceeds this value.
    window_seconds:
        Width of the sliding window.
    disable_on_exceed:
        When ``True`` a trip disables the adapter and raises
        :class:`ErrorBudgetExceeded`. When ``False`` the trip is logged and the
        window restarts.
    store:
        Optional state store so disablement survives restarts.
    """

    def __init__(
        self,
        adapter_id: str,
        *,
        threshold: int,
        window_seconds: float,
        disable_on_exceed: bool = True,
        store: Optional[StateStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.adapter_id = adapter_id
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.disable_on_exceed = disable_on_exceed
        self.store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._failures: Deque[float] = deque()
        self._disabled = False
        self._last_error_class: Optional[ErrorClass] = None
        self.logger = bind_adapter(LOGGER, adapter_id)
        self._restore()

    @classmethod
    def from_config(cls, adapter_id: str, config: EffectiveConfig, *, store: Optional[StateStore] = None, **kwargs: Any) -> "ErrorBudget":
        return cls(
            adapter_id,
            threshold=config.max_error_threshold,
            window_seconds=config.error_window_ms / 1000.0,
            disable_on_exceed=config.disable_on_exceed,
            store=store,
            **kwargs,
        )

    @property
    def _key(self) -> str:
        return f"budget:{self.adapter_id}"

    def _restore(self) -> None:
        if self.store is None:
            return
        payload = self.store.get(self._key)
        if not isinstance(payload, dict):
            return
        self._failures.extend(float(item) for item in payload.get("failures", []))
        self._disabled = bool(payload.get("disabled", False))
        last = payload.get("last_error_class")
        self._last_error_class = ErrorClass(last) if last else None

    def _persist(self) -> None:
        if self.store is None:
            return
        self.store.set(
            self._key,
            {
                "failures": list(self._failures),
                "disabled": self._disabled,
                "last_error_class": self._last_error_class.value if self._last_error_class else None,
            },
        )

    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._failures and self._failures[0] <= horizon:
            self._failures.popleft()

    @property
    def disabled(self) -> bool:
        with self._lock:
            return self._disabled

    @property
    def last_error_class(self) -> Optional[ErrorClass]:
        with self._lock:
            return self._last_error_class

    def failures(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._failures)

    def record_failure(self, error_class: ErrorClass = ErrorClass.UNKNOWN, *, count: int = 1) -> int:
        """
        Charge ``count`` failures to the budget.

        Returns the number of failures inside the window. Raises
        :class:`ErrorBudgetExceeded` when the threshold is crossed and
        ``disable_on_exceed`` is set.
        """

        now = self._clock()
        with self._lock:
            self._prune(now)
            self._failures.extend([now] * count)
            self._last_error_class = error_class
            failures = len(self._failures)
            tripped = failures > self.threshold and not self._disabled
            if tripped and self.disable_on_exceed:
                self._disabled = True
            elif tripped:
                self._failures.clear()
            self._persist()

        if not tripped:
            return failures
        if not self.disable_on_exceed:
            self.logger.error(
                "Error threshold exceeded; continuing because disableChannelOnExceed is off",
                extra={"records": failures, "threshold": self.threshold, "error_class": error_class.value},
            )
            return failures
        self.logger.error(
            "Error threshold exceeded; adapter disabled until re-armed",
            extra={"records": failures, "threshold": self.threshold, "error_class": error_class.value, "state": "disabled"},
        )
        raise ErrorBudgetExceeded(self.adapter_id, failures, self.threshold, error_class)

    def rearm(self) -> None:
        with self._lock:
            self._failures.clear()
            self._disabled = False
            self._persist()
        self.logger.info("Error budget re-armed", extra={"state": "idle"})

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            self._prune(self._clock())
            return {
                "failures": len(self._failures),
                "threshold": self.threshold,
                "disabled": self._disabled,
                "last_error_class": self._last_error_class.value if self._last_error_class else None,
            }


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Short-circuits calls after repeated failed operations until a cool-down elapses."""

    def __init__(self, threshold: int, reset_timeout: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._state = CircuitState.CLOSED

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def before_call(self) -> None:
        if self.threshold <= 0:
            return
        with self._lock:
            if self._state != CircuitState.OPEN:
                return
            if self._opened_at is None:
                self._opened_at = self._clock()
            remaining = self.reset_timeout - (self._clock() - self._opened_at)
            if remaining > 0:
                raise CircuitOpen(f"Circuit open; retry in {remaining:.1f}s.")
            self._state = CircuitState.HALF_OPEN

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None
            self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        if self.threshold <= 0:
            return
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()


class RetryPolicy:
    """
    Execute operations with exponential backoff.

    Retryable failures (see :func:`~broker_adapters.contract.errors.classify_error`)
    are retried up to ``max_attempts`` in total. Non-retryable failures stop
    immediately. In both cases the caller receives :class:`Exhausted` chained to
    the last underlying error, and one failure is charged to the error budget.
    When the deadline cuts a retryable failure short the caller receives
    :class:`OperationCancelled` instead, so the work is re-attempted rather than
    skipped.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        multiplier: float = 2.0,
        max_delay: float = 60.0,
        jitter: float = 0.0,
        exponential: bool = True,
        retryable_codes: Sequence[str] = (),
        budget: Optional[ErrorBudget] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
        adapter_id: str = "",
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.exponential = exponential
        self.retryable_codes = tuple(retryable_codes)
        self.budget = budget
        self.breaker = breaker
        self._sleep = sleep
        self._rng = rng
        self.state = RetryState()
        self.logger: LoggerAdapter = bind_adapter(LOGGER, adapter_id) if adapter_id else LOGGER

    @classmethod
    def from_config(
        cls,
        config: EffectiveConfig,
        *,
        adapter_id: str = "",
        budget: Optional[ErrorBudget] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_retry_attempts,
            base_delay=config.retry_delay_ms / 1000.0,
            multiplier=config.backoff_multiplier,
            max_delay=config.max_retry_delay_ms / 1000.0,
            jitter=config.retry_jitter,
            exponential=config.use_exponential_backoff,
            retryable_codes=config.retryable_error_codes,
            budget=budget,
            breaker=breaker,
            sleep=sleep,
            adapter_id=adapter_id,
        )

    def _base_wait(self) -> Callable[[RetryCallState], float]:
        if self.exponential:
            return wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay)
        return wait_fixed(min(self.base_delay, self.max_delay))

    def _wait(self, retry_state: RetryCallState) -> float:
        delay = float(self._base_wait()(retry_state))
        if self.jitter:
            delay *= 1.0 + self.jitter * (2.0 * self._rng() - 1.0)
        return max(0.0, min(delay, self.max_delay))

    def compute_delay(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based), without jitter."""

        if not self.exponential:
            return min(self.base_delay, self.max_delay)
        return min(self.base_delay * self.multiplier ** (retry_number - 1), self.max_delay)

    def is_retryable(self, exc: BaseException) -> bool:
        return classify_error(exc, self.retryable_codes)[1]

    def execute(
        self,
        operation: Callable[[], T],
        *,
        operation_name: str = "operation",
        deadline: Optional[Deadline] = None,
        guarded: bool = True,
    ) -> T:
        """
        Run ``operation`` under the retry policy.

        Parameters
        ----------
        operation:
            Zero-argument callable performing a single attempt.
        operation_name:
            Label used in logs and in :class:`Exhausted`.
        deadline:
            Optional cooperative deadline; once elapsed no further attempt starts.
        guarded:
            When ``False`` the circuit breaker is bypassed; used for calls into
            the downstream sink rather than the external system.
        """

        breaker = self.breaker if guarded else None
        if breaker is not None:
            breaker.before_call()

        attempts = 0
        delays: list[float] = []

        def _attempt() -> T:
            nonlocal attempts
            attempts += 1
            if deadline is not None:
                deadline.check(operation_name)
            return operation()

        def _before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            delays.append(delay)
            error = retry_state.outcome.exception() if retry_state.outcome else None
            self.logger.warning(
                "Retrying after failure",
                extra={"operation": operation_name, "attempt": retry_state.attempt_number, "delay": delay, "error": str(error)},
            )

        stop = stop_after_attempt(self.max_attempts)
        if deadline is not None:
            stop = stop_any(stop, lambda _state: deadline.expired())

        retrying = Retrying(
            stop=stop,
            wait=self._wait,
            retry=retry_if_exception(self.is_retryable),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )

        try:
            result = retrying(_attempt)
        except Exception as exc:
            error_class, retryable = classify_error(exc, self.retryable_codes)
            cancelled = retryable and deadline is not None and deadline.expired()
            if cancelled:
                error_class = ErrorClass.CANCELLED
            self.state = RetryState(
                attempts=attempts,
                consecutive_failures=self.state.consecutive_failures + attempts,
                last_error_class=error_class,
                delays=tuple(delays),
            )
            if breaker is not None:
                breaker.record_failure()
            self.logger.error(
                "Operation cancelled at deadline" if cancelled else "Operation failed",
                extra={"operation": operation_name, "attempt": attempts, "error_class": error_class.value, "error": str(exc)},
            )
            if self.budget is not None:
                try:
                    self.budget.record_failure(error_class)
                except ErrorBudgetExceeded as budget_exc:
                    raise budget_exc from exc
            if cancelled:
                raise OperationCancelled(f"Deadline elapsed during '{operation_name}' after {attempts} attempt(s).") from exc
            raise Exhausted(operation_name, attempts, error_class, fatal=not retryable) from exc

        if self.state.consecutive_failures or attempts > 1:
            self.logger.info("Operation recovered", extra={"operation": operation_name, "attempt": attempts})
        self.state = RetryState(attempts=attempts, consecutive_failures=0, last_error_class=None, delays=tuple(delays))
        if breaker is not None:
            breaker.record_success()
        return result
