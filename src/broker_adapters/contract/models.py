"""
Value types exchanged between transports, the polling scheduler and the delivery executor.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence
from uuid import uuid4


class CursorKind(str, Enum):
    """Representation of an incremental-progress marker."""

    TIMESTAMP = "timestamp"
    ID = "id"
    DELTA_TOKEN = "delta_token"


class CursorError(ValueError):
    """Raised when two cursors of different kinds are compared or a payload is invalid."""


@dataclass(frozen=True, slots=True)
class Cursor:
    """
    Position in a source system's change stream.

    ``TIMESTAMP`` values are epoch milliseconds, ``ID`` values are integers and
    ``DELTA_TOKEN`` values are opaque strings issued by the source.
    """

    kind: CursorKind
    value: int | str

    @classmethod
    def timestamp(cls, moment: datetime | float | int) -> "Cursor":
        if isinstance(moment, datetime):
            return cls(CursorKind.TIMESTAMP, int(moment.timestamp() * 1000))
        return cls(CursorKind.TIMESTAMP, int(moment))

    @classmethod
    def identifier(cls, value: int) -> "Cursor":
        return cls(CursorKind.ID, int(value))

    @classmethod
    def delta_token(cls, token: str) -> "Cursor":
        return cls(CursorKind.DELTA_TOKEN, str(token))

    def is_after(self, other: Optional["Cursor"]) -> bool:
        """
        Return ``True`` when this cursor is a forward move from ``other``.

        Delta tokens carry no order, so any different token counts as forward.
        """

        if other is None:
            return True
        if other.kind != self.kind:
            raise CursorError(f"Cannot compare {self.kind.value} cursor with {other.kind.value} cursor.")
        if self.kind == CursorKind.DELTA_TOKEN:
            return self.value != other.value
        return int(self.value) > int(other.value)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "value": self.value}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Cursor":
        try:
            kind = CursorKind(str(payload["kind"]))
            raw = payload["value"]
        except (KeyError, ValueError) as exc:
            raise CursorError(f"Invalid cursor payload: {payload!r}") from exc
        if kind == CursorKind.DELTA_TOKEN:
            return cls(kind, str(raw))
        try:
            return cls(kind, int(raw))
        except (TypeError, ValueError) as exc:
            raise CursorError(f"Invalid {kind.value} cursor value: {raw!r}") from exc

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.value}"


@dataclass(frozen=True, slots=True)
class Record:
    """
    A single logical item moving through an adapter.

    Attributes
    ----------
    record_id:
        Natural identity of the item (file name, primary key, message id).
    payload:
        Raw bytes exactly as read from, or to be written to, the external system.
    fields:
        Structured view used for natural-key deduplication and JSON transports.
    cursor:
        Position of this record in the source stream, when known.
    metadata:
        Transport-specific attributes (size, mtime, headers) carried for diagnostics.
    """

    record_id: str
    payload: bytes = b""
    fields: Mapping[str, Any] = field(default_factory=dict)
    cursor: Optional[Cursor] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, record_id: str, document: Mapping[str, Any], *, cursor: Optional[Cursor] = None) -> "Record":
        payload = json.dumps(document, ensure_ascii=False, sort_keys=True, default=str).encode("utf-8")
        return cls(record_id=record_id, payload=payload, fields=dict(document), cursor=cursor)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-safe representation used by sinks and dead-letter files."""

        try:
            body: Any = self.payload.decode("utf-8")
        except UnicodeDecodeError:
            body = self.payload.hex()
        return {
            "record_id": self.record_id,
            "payload": body,
            "fields": dict(self.fields),
            "cursor": self.cursor.to_dict() if self.cursor else None,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class Batch:
    """Ordered records plus the cursor positions that produced them."""

    records: List[Record] = field(default_factory=list)
    start_cursor: Optional[Cursor] = None
    end_cursor: Optional[Cursor] = None
    batch_id: str = field(default_factory=lambda: uuid4().hex)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    @property
    def is_empty(self) -> bool:
        return not self.records

    @property
    def terminal_cursor(self) -> Optional[Cursor]:
        """Cursor the store advances to once the whole batch was handed off."""

        if self.end_cursor is not None:
            return self.end_cursor
        for record in reversed(self.records):
            if record.cursor is not None:
                return record.cursor
        return None

    def slice(self, start: int) -> "Batch":
        return Batch(records=self.records[start:], start_cursor=self.start_cursor, end_cursor=self.end_cursor, batch_id=self.batch_id)


@dataclass(frozen=True, slots=True)
class CommitResult:
    """Outcome of a successful ``Transport.deliver`` call."""

    committed: int
    references: Sequence[str] = field(default_factory=tuple)
