"""
Reference sinks for inbound records and dead letters.

Production deployments hand records to a workflow engine; these sinks cover
local runs, the CLI and tests.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, List

from ..contract.models import Record
from ..core.logging import get_logger
from .base import Ack

LOGGER = get_logger(__name__)


class CallableSink:
    """Adapt a plain callable; a ``None`` or truthy return value acknowledges the record."""

    def __init__(self, handler: Callable[[Record], Any]) -> None:
        self.handler = handler

    def hand_off(self, record: Record) -> Ack:
        result = self.handler(record)
        if isinstance(result, Ack):
            return result
        return Ack.ACK if result is None or bool(result) else Ack.NACK


class MemorySink:
    """Collect records in memory."""

    def __init__(self) -> None:
        self.records: List[Record] = []
        self._lock = threading.Lock()

    def hand_off(self, record: Record) -> Ack:
        with self._lock:
            self.records.append(record)
        return Ack.ACK


class JsonLinesSink:
    """Append each record as one JSON line to ``path``."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def hand_off(self, record: Record) -> Ack:
        line = json.dumps(record.to_dict(), ensure_ascii=False, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        return Ack.ACK


class LoggingDeadLetterSink:
    """Log rejected records at ERROR level."""

    def reject(self, adapter_id: str, record: Record, reason: str) -> None:
        LOGGER.error("Record dead-lettered", extra={"adapter_id": adapter_id, "record_id": record.record_id, "reason": reason})


class JsonLinesDeadLetterSink:
    """Append rejected records with their reason to ``<directory>/<adapter_id>.jsonl``."""

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def path_for(self, adapter_id: str) -> Path:
        return self.directory / f"{adapter_id}.jsonl"

    def reject(self, adapter_id: str, record: Record, reason: str) -> None:
        entry = {
            "adapter_id": adapter_id,
            "rejected_at": datetime.now(UTC).isoformat(),
            "reason": reason,
            "record": record.to_dict(),
        }
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            with self.path_for(adapter_id).open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        LOGGER.warning("Record dead-lettered", extra={"adapter_id": adapter_id, "record_id": record.record_id, "reason": reason})
