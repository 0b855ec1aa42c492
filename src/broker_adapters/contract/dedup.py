"""
Duplicate suppression for ingestion and delivery.

A :class:`DedupKey` is derived from a record's natural identity according to a
:class:`~broker_adapters.contract.options.DedupStrategy`; the :class:`DedupIndex`
remembers keys that were successfully handed off or delivered for a retention
period so replays after a crash are invisible downstream.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Iterable, Sequence

from .errors import ErrorClass, FatalTransportError
from .models import Record
from .options import ChecksumAlgorithm, DedupStrategy
from .stores import StateStore


@dataclass(frozen=True, slots=True)
class DedupKey:
    strategy: DedupStrategy
    value: str

    @property
    def token(self) -> str:
        return f"{self.strategy.value}:{self.value}"

    def __str__(self) -> str:
        return self.token


def _digest(algorithm: ChecksumAlgorithm, payload: bytes) -> str:
    hasher = hashlib.new(algorithm.value, usedforsecurity=False)
    hasher.update(payload)
    return hasher.hexdigest()


def derive_key(
    record: Record,
    strategy: DedupStrategy,
    *,
    algorithm: ChecksumAlgorithm = ChecksumAlgorithm.MD5,
    key_fields: Sequence[str] = (),
) -> DedupKey:
    """
    Compute the dedup key of ``record``.

    ``NAME`` uses the record id, ``CHECKSUM`` a digest of the payload,
    ``CONTENT`` a SHA-256 over payload and structured fields, and ``NATURAL_KEY``
    the values of ``key_fields`` in declaration order.
    """

    if strategy == DedupStrategy.NAME:
        return DedupKey(strategy, record.record_id)
    if strategy == DedupStrategy.CHECKSUM:
        return DedupKey(strategy, _digest(algorithm, record.payload))
    if strategy == DedupStrategy.CONTENT:
        hasher = hashlib.sha256(record.payload)
        hasher.update(json.dumps(dict(record.fields), sort_keys=True, default=str).encode("utf-8"))
        return DedupKey(strategy, hasher.hexdigest())
    if strategy == DedupStrategy.NATURAL_KEY:
        missing = [name for name in key_fields if record.fields.get(name) is None]
        if missing or not key_fields:
            raise FatalTransportError(
                f"Record '{record.record_id}' is missing natural key field(s): {', '.join(missing) or '<none declared>'}.",
                error_class=ErrorClass.MALFORMED,
            )
        return DedupKey(strategy, "|".join(str(record.fields[name]) for name in key_fields))
    raise ValueError(f"Unsupported dedup strategy: {strategy!r}")


class DedupIndex:
    """Expiring membership set of dedup keys for one adapter instance."""

    def __init__(self, store: StateStore, adapter_id: str, *, retention_seconds: float = 86400.0) -> None:
        self.store = store
        self.adapter_id = adapter_id
        self.retention_seconds = retention_seconds
        self.namespace = f"dedup:{adapter_id}"

    def contains(self, key: DedupKey) -> bool:
        return self.store.has_member(self.namespace, key.token)

    def insert(self, key: DedupKey) -> bool:
        """Record ``key``; returns ``False`` when it was already present."""

        return self.store.add_member(self.namespace, key.token, self.retention_seconds)

    def insert_many(self, keys: Iterable[DedupKey]) -> int:
        return sum(1 for key in keys if self.insert(key))

    def clear(self) -> int:
        return self.store.clear_members(self.namespace)
