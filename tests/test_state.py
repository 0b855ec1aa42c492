from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
import redis

from broker_adapters.contract import (
    ChecksumAlgorithm,
    Cursor,
    CursorError,
    CursorKind,
    CursorStore,
    DedupIndex,
    DedupStrategy,
    FatalTransportError,
    JsonFileStateStore,
    MemoryStateStore,
    Record,
    RedisStateStore,
    StoreError,
    build_store,
    derive_key,
)


def test_cursor_ordering_and_round_trip():
    older = Cursor.timestamp(1_000)
    newer = Cursor.timestamp(2_000)

    assert newer.is_after(older)
    assert not older.is_after(newer)
    assert newer.is_after(None)
    assert Cursor.from_dict(newer.to_dict()) == newer
    assert Cursor.delta_token("b").is_after(Cursor.delta_token("a"))
    with pytest.raises(CursorError):
        Cursor.identifier(1).is_after(older)
    with pytest.raises(CursorError):
        Cursor.from_dict({"kind": "id", "value": "seven"})


def test_memory_store_membership_expires(clock):
    store = MemoryStateStore(clock=clock)

    assert store.add_member("dedup:a", "k1", ttl_seconds=10)
    assert not store.add_member("dedup:a", "k1", ttl_seconds=10)
    assert store.has_member("dedup:a", "k1")
    clock.advance(11)
    assert not store.has_member("dedup:a", "k1")
    assert store.add_member("dedup:a", "k1", ttl_seconds=10)
    assert store.clear_members("dedup:a") == 1


def test_memory_store_drops_expired_members_on_insert(clock):
    store = MemoryStateStore(clock=clock)
    for n in range(50):
        store.add_member("dedup:a", f"old-{n}", ttl_seconds=10)
    clock.advance(11)

    assert store.add_member("dedup:a", "fresh", ttl_seconds=10)
    assert store.clear_members("dedup:a") == 1


def test_json_file_store_persists_across_instances(tmp_path, clock):
    path = tmp_path / "state" / "state.json"
    first = JsonFileStateStore(path, clock=clock)
    first.set("cursor:orders", {"kind": "timestamp", "value": 42})
    first.add_member("dedup:orders", "name:a.csv", ttl_seconds=60)

    second = JsonFileStateStore(path, clock=clock)
    assert second.get("cursor:orders") == {"kind": "timestamp", "value": 42}
    assert second.has_member("dedup:orders", "name:a.csv")
    assert not path.with_name("state.json.tmp").exists()

    second.delete("cursor:orders")
    assert JsonFileStateStore(path, clock=clock).get("cursor:orders") is None


def test_json_file_store_rejects_corrupt_document(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")

    with pytest.raises(StoreError):
        JsonFileStateStore(path).get("anything")


def test_redis_store_uses_set_nx_with_expiry():
    client = MagicMock()
    client.set.return_value = True
    client.get.return_value = json.dumps({"kind": "id", "value": 9})
    store = RedisStateStore(client, prefix="test:")

    assert store.add_member("dedup:orders", "name:x", ttl_seconds=2.5)
    client.set.assert_called_with("test:dedup:orders:name:x", "1", px=2500, nx=True)
    assert store.get("cursor:orders") == {"kind": "id", "value": 9}
    client.get.assert_called_with("test:cursor:orders")


def test_redis_store_wraps_client_errors():
    client = MagicMock()
    client.get.side_effect = redis.ConnectionError("down")

    with pytest.raises(StoreError, match="down"):
        RedisStateStore(client).get("cursor:orders")


def test_build_store_backends(tmp_path):
    assert isinstance(build_store("memory"), MemoryStateStore)
    assert isinstance(build_store("file", path=tmp_path / "s.json"), JsonFileStateStore)
    with pytest.raises(StoreError):
        build_store("file")
    with pytest.raises(StoreError):
        build_store("redis")
    with pytest.raises(StoreError):
        build_store("etcd")


def test_cursor_store_only_moves_forward(store):
    cursors = CursorStore(store)

    assert cursors.load("orders") is None
    assert cursors.advance("orders", Cursor.timestamp(100))
    assert not cursors.advance("orders", Cursor.timestamp(50))
    assert not cursors.advance("orders", Cursor.timestamp(100))
    assert not cursors.advance("orders", Cursor.identifier(500))
    assert not cursors.advance("orders", None)
    assert cursors.load("orders") == Cursor.timestamp(100)


def test_cursor_store_reset_can_move_backwards(store):
    cursors = CursorStore(store)
    cursors.advance("orders", Cursor.timestamp(100))

    cursors.reset("orders", Cursor.timestamp(10))
    assert cursors.load("orders") == Cursor.timestamp(10)
    cursors.reset("orders")
    assert cursors.load("orders") is None


def test_derive_key_strategies():
    record = Record(record_id="a.csv", payload=b"hello", fields={"tenant": "t1", "order": 7})

    assert derive_key(record, DedupStrategy.NAME).value == "a.csv"
    assert derive_key(record, DedupStrategy.CHECKSUM).value == "5d41402abc4b2a76b9719d911017c592"
    sha256 = derive_key(record, DedupStrategy.CHECKSUM, algorithm=ChecksumAlgorithm.SHA256).value
    assert sha256 == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
    assert derive_key(record, DedupStrategy.NATURAL_KEY, key_fields=["tenant", "order"]).value == "t1|7"

    renamed = Record(record_id="b.csv", payload=b"hello", fields={"tenant": "t1", "order": 7})
    assert derive_key(renamed, DedupStrategy.CONTENT) == derive_key(record, DedupStrategy.CONTENT)
    assert derive_key(renamed, DedupStrategy.NAME) != derive_key(record, DedupStrategy.NAME)


def test_derive_key_requires_natural_key_fields():
    record = Record(record_id="a", fields={"tenant": "t1"})

    with pytest.raises(FatalTransportError, match="order"):
        derive_key(record, DedupStrategy.NATURAL_KEY, key_fields=["tenant", "order"])


def test_dedup_index_is_scoped_per_adapter(store, clock):
    orders = DedupIndex(store, "orders", retention_seconds=60)
    invoices = DedupIndex(store, "invoices", retention_seconds=60)
    key = derive_key(Record(record_id="x"), DedupStrategy.NAME)

    assert orders.insert(key)
    assert not orders.insert(key)
    assert orders.contains(key)
    assert not invoices.contains(key)
    clock.advance(61)
    assert not orders.contains(key)


def test_cursor_kind_values():
    assert {kind.value for kind in CursorKind} == {"timestamp", "id", "delta_token"}
