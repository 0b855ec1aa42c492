"""
Error taxonomy shared by every component of the adapter execution contract.

All errors derive from :class:`AdapterError` so callers can catch the whole family
at the operator boundary. Retryability is an attribute of the error rather than a
separate lookup table; :func:`classify_error` maps builtin exceptions raised by
transport libraries onto the same vocabulary.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class ErrorClass(str, Enum):
    """Closed set of failure categories reported by retry state and adapter status."""

    CONNECTION = "connection"
    TIMEOUT = "timeout"
    SERVER = "server"
    RATE_LIMITED = "rate_limited"
    POOL_EXHAUSTED = "pool_exhausted"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    AUTHENTICATION = "authentication"
    MALFORMED = "malformed"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class AdapterError(RuntimeError):
    """Base class for adapter-level failures."""

    error_class: ErrorClass = ErrorClass.UNKNOWN
    retryable: bool = False


class ConfigError(AdapterError):
    """Raised when an adapter configuration cannot be resolved."""

    error_class = ErrorClass.CONFIGURATION


class ConfigTypeMismatch(ConfigError):
    """Raised when a configured value cannot be coerced to the option's declared type."""

    def __init__(self, key: str, value: object, expected: str) -> None:
        super().__init__(f"Option '{key}' expects {expected}, got {value!r}.")
        self.key = key
        self.value = value
        self.expected = expected


class TransportError(AdapterError):
    """
    Failure reported by a transport implementation.

    Parameters
    ----------
    message:
        Human readable description.
    retryable:
        Whether the failure is transient (network, timeout, 5xx) rather than
        permanent (authentication, malformed payload).
    error_class:
        Category recorded in retry state and adapter status.
    code:
        Optional protocol-specific code (HTTP status, SQL state, SFTP status) matched
        against ``retryableErrorCodes``.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: Optional[bool] = None,
        error_class: Optional[ErrorClass] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable
        if error_class is not None:
            self.error_class = error_class
        self.code = code


class RetryableTransportError(TransportError):
    retryable = True
    error_class = ErrorClass.CONNECTION


class FatalTransportError(TransportError):
    retryable = False
    error_class = ErrorClass.MALFORMED


class PoolExhausted(AdapterError):
    """Raised when no lease became available before the acquisition deadline."""

    retryable = True
    error_class = ErrorClass.POOL_EXHAUSTED


class RateLimited(AdapterError):
    """Raised when the rate limiter could not grant tokens before the deadline."""

    retryable = True
    error_class = ErrorClass.RATE_LIMITED


class HandOffRejected(AdapterError):
    """Raised when the downstream sink answers a record with ``nack``."""

    retryable = True
    error_class = ErrorClass.REJECTED


class OperationCancelled(AdapterError):
    """Raised when a cooperative deadline elapses during fetch, hand-off or delivery."""

    retryable = True
    error_class = ErrorClass.CANCELLED


class CircuitOpen(AdapterError):
    """Raised when the circuit breaker short-circuits a call to a failing system."""

    retryable = True
    error_class = ErrorClass.CIRCUIT_OPEN


class Exhausted(AdapterError):
    """Raised when an operation failed and the retry policy gave up on it."""

    def __init__(self, operation: str, attempts: int, error_class: ErrorClass, *, fatal: bool = False) -> None:
        reason = "failed with a non-retryable error" if fatal else f"exhausted after {attempts} attempt(s)"
        super().__init__(f"Operation '{operation}' {reason} ({error_class.value}).")
        self.operation = operation
        self.attempts = attempts
        self.error_class = error_class
        self.fatal = fatal


class ErrorBudgetExceeded(AdapterError):
    """Raised when an adapter crosses its error threshold and has been disabled."""

    def __init__(self, adapter_id: str, failures: int, threshold: int, last_error_class: Optional[ErrorClass]) -> None:
        super().__init__(f"Adapter '{adapter_id}' disabled: {failures} failure(s) exceeded the threshold of {threshold}.")
        self.adapter_id = adapter_id
        self.failures = failures
        self.threshold = threshold
        self.error_class = last_error_class or ErrorClass.UNKNOWN


class AdapterDisabled(AdapterError):
    """Raised by runtime operations that refuse to act on a disabled adapter."""


_CONNECTION_ERRORS = (ConnectionError, EOFError)


def classify_error(exc: BaseException, retryable_codes: Sequence[str] = ()) -> tuple[ErrorClass, bool]:
    """
    Map an exception onto ``(error_class, retryable)``.

    Adapter errors carry their own classification; builtin I/O errors are treated as
    transient unless they signal a permission problem. Any error exposing a ``code``
    listed in ``retryable_codes`` is retryable regardless of its class.
    """

    code = getattr(exc, "code", None)
    code_match = code is not None and str(code) in {str(item) for item in retryable_codes}

    if isinstance(exc, AdapterError):
        return exc.error_class, bool(exc.retryable or code_match)
    if isinstance(exc, TimeoutError):
        return ErrorClass.TIMEOUT, True
    if isinstance(exc, PermissionError):
        return ErrorClass.AUTHENTICATION, code_match
    if isinstance(exc, _CONNECTION_ERRORS):
        return ErrorClass.CONNECTION, True
    if isinstance(exc, OSError):
        return ErrorClass.CONNECTION, True
    if isinstance(exc, (ValueError, TypeError, KeyError, UnicodeError)):
        return ErrorClass.MALFORMED, code_match
    return ErrorClass.UNKNOWN, code_match
