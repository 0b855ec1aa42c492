"""Compare-and-set state flag used to keep a single operation in flight per adapter."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Generic, TypeVar

S = TypeVar("S", bound=Enum)


class AtomicState(Generic[S]):
    """
    Enum-valued flag with atomic compare-and-set.

    The internal lock only guards the read-modify-write of the flag itself and is
    never held while the caller performs I/O.
    """

    def __init__(self, initial: S) -> None:
        self._value = initial
        self._lock = threading.Lock()

    def get(self) -> S:
        with self._lock:
            return self._value

    def set(self, value: S) -> None:
        with self._lock:
            self._value = value

    def compare_and_set(self, expected: S, new: S) -> bool:
        with self._lock:
            if self._value != expected:
                return False
            self._value = new
            return True
