"""
Key-value state stores backing cursors, dedup membership and error budgets.

The contract only needs two shapes of durable state: single JSON values keyed by
name (cursor, budget counters) and expiring set membership (dedup keys). Three
backends are provided: in-memory for tests and one-shot CLI runs, a JSON document
on disk for single-node deployments, and Redis for shared deployments.
"""

from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, MutableMapping, Optional, Protocol, runtime_checkable

import redis

from ..core.logging import get_logger
from .errors import AdapterError

LOGGER = get_logger(__name__)


class StoreError(AdapterError):
    """Raised when persisted adapter state cannot be read or written."""


@runtime_checkable
class StateStore(Protocol):
    """Persistence capability supplied to the cursor store, dedup index and error budget."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def add_member(self, namespace: str, member: str, ttl_seconds: float) -> bool:
        ...

    def has_member(self, namespace: str, member: str) -> bool:
        ...

    def clear_members(self, namespace: str) -> int:
        ...


class MemoryStateStore:
    """Thread-safe in-process store."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = {}
        self._members: Dict[str, Dict[str, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def add_member(self, namespace: str, member: str, ttl_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            bucket = self._members.setdefault(namespace, {})
            if bucket.get(member, 0.0) > now:
                return False
            for stale in [key for key, expires_at in bucket.items() if expires_at <= now]:
                del bucket[stale]
            bucket[member] = now + ttl_seconds
            return True

    def has_member(self, namespace: str, member: str) -> bool:
        now = self._clock()
        with self._lock:
            bucket = self._members.get(namespace, {})
            expires_at = bucket.get(member)
            if expires_at is None:
                return False
            if expires_at <= now:
                bucket.pop(member, None)
                return False
            return True

    def clear_members(self, namespace: str) -> int:
        with self._lock:
            return len(self._members.pop(namespace, {}))


class JsonFileStateStore:
    """
    Store persisted as a single JSON document.

    Every mutation rewrites the document through a temporary file followed by
    :func:`os.replace`, so a crash never leaves a truncated state file behind.
    """

    def __init__(self, path: Path | str, *, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self._clock = clock
        self._lock = threading.Lock()
        self._document: Optional[MutableMapping[str, Any]] = None

    def _load(self) -> MutableMapping[str, Any]:
        if self._document is not None:
            return self._document
        if self.path.exists():
            try:
                payload = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            except (OSError, ValueError) as exc:
                raise StoreError(f"Failed to read state file '{self.path}': {exc}") from exc
            if not isinstance(payload, dict):
                raise StoreError(f"State file '{self.path}' must contain a JSON object.")
        else:
            payload = {}
        payload.setdefault("values", {})
        payload.setdefault("members", {})
        self._document = payload
        return payload

    def _flush(self, document: MutableMapping[str, Any]) -> None:
        now = self._clock()
        for namespace, bucket in list(document["members"].items()):
            live = {member: expires for member, expires in bucket.items() if expires > now}
            if live:
                document["members"][namespace] = live
            else:
                document["members"].pop(namespace)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(self.path.name + ".tmp")
        try:
            staging.write_text(json.dumps(document, ensure_ascii=False, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(staging, self.path)
        except OSError as exc:
            raise StoreError(f"Failed to write state file '{self.path}': {exc}") from exc

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._load()["values"].get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            document = self._load()
            document["values"][key] = value
            self._flush(document)

    def delete(self, key: str) -> None:
        with self._lock:
            document = self._load()
            if document["values"].pop(key, None) is not None:
                self._flush(document)

    def add_member(self, namespace: str, member: str, ttl_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            document = self._load()
            bucket = document["members"].setdefault(namespace, {})
            expires_at = bucket.get(member)
            if expires_at is not None and expires_at > now:
                return False
            bucket[member] = now + ttl_seconds
            self._flush(document)
            return True

    def has_member(self, namespace: str, member: str) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._load()["members"].get(namespace, {}).get(member)
            return expires_at is not None and expires_at > now

    def clear_members(self, namespace: str) -> int:
        with self._lock:
            document = self._load()
            removed = document["members"].pop(namespace, {})
            if removed:
                self._flush(document)
            return len(removed)


class RedisStateStore:
    """
    Store backed by Redis.

    Values are JSON strings under ``<prefix><key>``. Dedup membership uses one key
    per member written with ``SET NX PX`` so expiry is enforced by Redis itself.
    """

    def __init__(self, client: "redis.Redis", *, prefix: str = "broker:") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str = "broker:") -> "RedisStateStore":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    def _member_key(self, namespace: str, member: str) -> str:
        return f"{self.prefix}{namespace}:{member}"

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(f"{self.prefix}{key}")
        except redis.RedisError as exc:
            raise StoreError(f"Redis read failed for '{key}': {exc}") from exc
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        try:
            self.client.set(f"{self.prefix}{key}", json.dumps(value, ensure_ascii=False))
        except redis.RedisError as exc:
            raise StoreError(f"Redis write failed for '{key}': {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(f"{self.prefix}{key}")
        except redis.RedisError as exc:
            raise StoreError(f"Redis delete failed for '{key}': {exc}") from exc

    def add_member(self, namespace: str, member: str, ttl_seconds: float) -> bool:
        ttl_ms = max(1, int(ttl_seconds * 1000))
        try:
            result = self.client.set(self._member_key(namespace, member), "1", px=ttl_ms, nx=True)
        except redis.RedisError as exc:
            raise StoreError(f"Redis membership write failed for '{namespace}': {exc}") from exc
        return bool(result)

    def has_member(self, namespace: str, member: str) -> bool:
        try:
            return bool(self.client.exists(self._member_key(namespace, member)))
        except redis.RedisError as exc:
            raise StoreError(f"Redis membership read failed for '{namespace}': {exc}") from exc

    def clear_members(self, namespace: str) -> int:
        removed = 0
        try:
            for key in self.client.scan_iter(match=f"{self.prefix}{namespace}:*"):
                removed += int(self.client.delete(key))
        except redis.RedisError as exc:
            raise StoreError(f"Redis membership clear failed for '{namespace}': {exc}") from exc
        return removed


def build_store(backend: str, *, path: Optional[Path] = None, url: Optional[str] = None, prefix: str = "broker:") -> StateStore:
    """Instantiate a store from the ``[store]`` settings section."""

    normalised = (backend or "memory").strip().lower()
    if normalised == "memory":
        return MemoryStateStore()
    if normalised == "file":
        if path is None:
            raise StoreError("The file state store requires a path.")
        return JsonFileStateStore(path)
    if normalised == "redis":
        if not url:
            raise StoreError("The redis state store requires a url.")
        LOGGER.info("Using redis state store", extra={"url": url})
        return RedisStateStore.from_url(url, prefix=prefix)
    raise StoreError(f"Unknown state store backend '{backend}'.")
