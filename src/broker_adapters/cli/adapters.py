"""
Helpers for building adapter runtimes and inputs in CLI contexts.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from ..contract import Cursor, CursorKind, Record
from ..core import AdapterRegistry, ExecutionContext
from ..services import AdapterRuntime


def build_runtime(registry: AdapterRegistry, context: ExecutionContext) -> AdapterRuntime:
    """Construct the runtime used by one CLI invocation."""

    return AdapterRuntime(registry=registry, context=context)


def parse_cursor(kind: CursorKind, value: Optional[str]) -> Optional[Cursor]:
    """
    Interpret an operator-supplied cursor value.

    ``None`` or an empty string clears the cursor. Timestamps accept epoch
    milliseconds or ISO-8601 text.
    """

    if value is None or not value.strip():
        return None
    text = value.strip()
    if kind == CursorKind.DELTA_TOKEN:
        return Cursor.delta_token(text)
    if kind == CursorKind.ID:
        return Cursor.identifier(int(text))
    if text.isdigit():
        return Cursor.timestamp(int(text))
    return Cursor.timestamp(datetime.fromisoformat(text.replace("Z", "+00:00")))


def records_from_paths(paths: Sequence[Path]) -> List[Record]:
    """
    Turn files into records for outbound delivery.

    ``.json`` files carrying an object become structured records keyed by the
    file name; every other file is delivered as raw bytes.
    """

    records: List[Record] = []
    for path in paths:
        raw = path.read_bytes()
        if path.suffix.lower() == ".json":
            try:
                document = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                document = None
            if isinstance(document, dict):
                records.append(Record(record_id=path.name, payload=raw, fields=document))
                continue
        records.append(Record(record_id=path.name, payload=raw))
    return records
