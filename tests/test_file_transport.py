from __future__ import annotations

import os

import pytest

from broker_adapters.adapters.files import FileEntry, LocalFileTransport, select_after_cursor
from broker_adapters.contract import Batch, Cursor, FatalTransportError, ProcessingMode, Record, RetryableTransportError, default_config


def _drop(directory, name, body, mtime_ms):
    path = directory / name
    path.write_bytes(body)
    os.utime(path, ns=(mtime_ms * 1_000_000, mtime_ms * 1_000_000))
    return path


def _entry(name, mtime_ms):
    return FileEntry(name=name, path=f"/in/{name}", size=1, mtime_ms=mtime_ms)


def test_fetch_returns_files_in_mtime_order_after_cursor(tmp_path):
    _drop(tmp_path, "b.json", b"B", 2000)
    _drop(tmp_path, "a.json", b"A", 1000)
    _drop(tmp_path, "c.json", b"C", 3000)
    transport = LocalFileTransport(tmp_path)

    first = transport.fetch(transport.open(), None, 2)
    second = transport.fetch(transport.open(), first.end_cursor, 2)

    assert [record.record_id for record in first] == ["a.json", "b.json"]
    assert first.end_cursor == Cursor.timestamp(2000)
    assert [record.payload for record in second] == [b"C"]


def test_staged_and_unmatched_files_are_ignored(tmp_path):
    _drop(tmp_path, "ready.json", b"{}", 1000)
    _drop(tmp_path, "partial.json.tmp", b"{", 1000)
    _drop(tmp_path, "notes.txt", b"hi", 1000)
    (tmp_path / "archive").mkdir()
    transport = LocalFileTransport(tmp_path, pattern="*.json")

    batch = transport.fetch(transport.open(), None, 10)

    assert [record.record_id for record in batch] == ["ready.json"]


def test_equal_mtime_groups_are_not_split():
    entries = [_entry("a", 1), _entry("b", 2), _entry("c", 2), _entry("d", 3)]

    assert [entry.name for entry in select_after_cursor(entries, None, 2)] == ["a"]
    assert [entry.name for entry in select_after_cursor(entries, Cursor.timestamp(1), 1)] == ["b", "c"]
    assert [entry.name for entry in select_after_cursor(entries, Cursor.timestamp(2), 5)] == ["d"]


def test_missing_directory_is_retryable(tmp_path):
    transport = LocalFileTransport(tmp_path / "absent")

    with pytest.raises(RetryableTransportError):
        transport.open()
    assert not transport.test_connection(None)


def test_deliver_writes_one_file_per_record(tmp_path):
    transport = LocalFileTransport(tmp_path)
    batch = Batch(records=[Record(record_id="inv-1.xml", payload=b"<a/>"), Record(record_id="inv-2.xml", payload=b"<b/>")])

    result = transport.deliver(transport.open(), batch)

    assert result.committed == 2
    assert (tmp_path / "inv-2.xml").read_bytes() == b"<b/>"
    assert not list(tmp_path.glob("*.tmp"))


def test_deliver_rejects_path_traversal(tmp_path):
    transport = LocalFileTransport(tmp_path)

    with pytest.raises(FatalTransportError):
        transport.deliver(transport.open(), Batch(records=[Record(record_id="../escape", payload=b"x")]))


@pytest.mark.parametrize("mode", [ProcessingMode.ARCHIVE, ProcessingMode.DELETE])
def test_acknowledge_processes_source_files(tmp_path, mode):
    _drop(tmp_path, "a.json", b"A", 1000)
    transport = LocalFileTransport(tmp_path, processing_mode=mode)
    batch = transport.fetch(transport.open(), None, 10)

    transport.acknowledge(None, batch)

    assert not (tmp_path / "a.json").exists()
    assert (tmp_path / "archive" / "a.json").exists() == (mode == ProcessingMode.ARCHIVE)


def test_from_config_requires_directory(tmp_path):
    with pytest.raises(FatalTransportError):
        LocalFileTransport.from_config(default_config())

    transport = LocalFileTransport.from_config(default_config(directory=str(tmp_path), pattern="*.csv", processingMode="DELETE"))
    assert transport.pattern == "*.csv"
    assert transport.processing_mode == ProcessingMode.DELETE
