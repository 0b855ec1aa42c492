"""
Per-adapter persistence of incremental-progress cursors.
"""

from __future__ import annotations

import threading
from typing import Optional

from ..core.logging import get_logger
from .models import Cursor, CursorError
from .stores import StateStore

LOGGER = get_logger(__name__)


class CursorStore:
    """
    Load and advance cursors keyed by adapter identifier.

    Cursors only ever move forward. An attempt to store a position that is not
    after the persisted one is ignored and logged; :meth:`reset` is the only way to
    move a cursor back.
    """

    def __init__(self, store: StateStore, *, namespace: str = "cursor") -> None:
        self.store = store
        self.namespace = namespace
        self._lock = threading.Lock()

    def _key(self, adapter_id: str) -> str:
        return f"{self.namespace}:{adapter_id}"

    def load(self, adapter_id: str) -> Optional[Cursor]:
        payload = self.store.get(self._key(adapter_id))
        if payload is None:
            return None
        return Cursor.from_dict(payload)

    def advance(self, adapter_id: str, cursor: Optional[Cursor]) -> bool:
        """
        Persist ``cursor`` when it moves forward.

        Returns ``True`` when the stored position changed.
        """

        if cursor is None:
            return False
        with self._lock:
            current = self.load(adapter_id)
            try:
                forward = cursor.is_after(current)
            except CursorError:
                LOGGER.warning(
                    "Ignoring cursor of a different kind",
                    extra={"adapter_id": adapter_id, "cursor": str(cursor), "current": str(current)},
                )
                return False
            if not forward:
                if current is not None and cursor != current:
                    LOGGER.warning(
                        "Ignoring cursor regression",
                        extra={"adapter_id": adapter_id, "cursor": str(cursor), "current": str(current)},
                    )
                return False
            self.store.set(self._key(adapter_id), cursor.to_dict())
        LOGGER.debug("Cursor advanced", extra={"adapter_id": adapter_id, "cursor": str(cursor)})
        return True

    def reset(self, adapter_id: str, cursor: Optional[Cursor] = None) -> None:
        """Operator reset: clear the cursor or pin it to an explicit position."""

        with self._lock:
            if cursor is None:
                self.store.delete(self._key(adapter_id))
            else:
                self.store.set(self._key(adapter_id), cursor.to_dict())
        LOGGER.info("Cursor reset", extra={"adapter_id": adapter_id, "cursor": str(cursor) if cursor else None})
