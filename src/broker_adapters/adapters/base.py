"""
Collaborator protocols at the boundary of the adapter execution contract.

Transports are intentionally narrow in scope: they open sessions, fetch a bounded
batch after a cursor, deliver a batch, and check connectivity. Retry, pooling,
batching, deduplication and cursor bookkeeping are handled by the contract
components so every protocol behaves the same way operationally.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from ..contract.models import Batch, CommitResult, Cursor, Record


@dataclass(slots=True)
class VerificationResult:
    """
    Structured response returned by adapter verification routines.

    Attributes
    ----------
    success:
        Indicates whether the verification succeeded.
    message:
        Human-readable summary.
    details:
        Optional structured metadata such as pool statistics or endpoint
        information.
    """

    success: bool
    message: str
    details: Optional[Mapping[str, object]] = None


@runtime_checkable
class Transport(Protocol):
    """Protocol implemented once per wire protocol."""

    name: str
    supports_atomic_commit: bool

    def open(self) -> Any:
        """Open a session used by subsequent calls."""

    def close(self, session: Any) -> None:
        """Release a session opened by :meth:`open`."""

    def fetch(self, session: Any, cursor: Optional[Cursor], max_items: int, *, timeout: Optional[float] = None) -> Batch:
        """Return up to ``max_items`` records strictly after ``cursor``, in source order."""

    def deliver(self, session: Any, batch: Batch, *, timeout: Optional[float] = None) -> CommitResult:
        """Write ``batch`` to the target; atomic transports commit all records or none."""

    def test_connection(self, session: Any) -> bool:
        """Cheap liveness check."""


class BaseTransport:
    """Convenience base class supplying defaults for optional transport capabilities."""

    name = "transport"
    supports_atomic_commit = False

    def open(self) -> Any:
        return None

    def close(self, session: Any) -> None:
        return None

    def fetch(self, session: Any, cursor: Optional[Cursor], max_items: int, *, timeout: Optional[float] = None) -> Batch:
        raise NotImplementedError(f"{self.name} does not support inbound fetch.")

    def deliver(self, session: Any, batch: Batch, *, timeout: Optional[float] = None) -> CommitResult:
        raise NotImplementedError(f"{self.name} does not support outbound delivery.")

    def test_connection(self, session: Any) -> bool:
        return True

    def acknowledge(self, session: Any, batch: Batch) -> None:
        """Post-commit hook invoked after the cursor advanced past ``batch``."""

        return None


class Ack(str, Enum):
    ACK = "ack"
    NACK = "nack"


class Sink(Protocol):
    """Workflow engine entry point receiving inbound records."""

    def hand_off(self, record: Record) -> Ack:
        ...


class DeadLetterSink(Protocol):
    """Destination for records that failed terminally."""

    def reject(self, adapter_id: str, record: Record, reason: str) -> None:
        ...
