from __future__ import annotations

import json

from broker_adapters.adapters.base import Ack
from broker_adapters.adapters.sinks import CallableSink, JsonLinesDeadLetterSink, JsonLinesSink, MemorySink
from broker_adapters.contract import Cursor, Record


def test_callable_sink_maps_return_values():
    assert CallableSink(lambda record: None).hand_off(Record("a")) == Ack.ACK
    assert CallableSink(lambda record: False).hand_off(Record("a")) == Ack.NACK
    assert CallableSink(lambda record: Ack.NACK).hand_off(Record("a")) == Ack.NACK


def test_memory_sink_collects_records():
    sink = MemorySink()

    sink.hand_off(Record("a"))

    assert [record.record_id for record in sink.records] == ["a"]


def test_json_lines_sinks_append(tmp_path):
    sink = JsonLinesSink(tmp_path / "out" / "records.jsonl")
    dead_letters = JsonLinesDeadLetterSink(tmp_path / "dead")

    sink.hand_off(Record("a", payload=b"{}", cursor=Cursor.identifier(1)))
    sink.hand_off(Record("b", payload=b"\xff"))
    dead_letters.reject("orders-inbox", Record("c"), "bad row")

    lines = [json.loads(line) for line in (tmp_path / "out" / "records.jsonl").read_text(encoding="utf-8").splitlines()]
    assert [line["record_id"] for line in lines] == ["a", "b"]
    assert lines[0]["cursor"] == {"kind": "id", "value": 1}
    assert lines[1]["payload"] == "ff"
    entry = json.loads(dead_letters.path_for("orders-inbox").read_text(encoding="utf-8"))
    assert entry["reason"] == "bad row"
    assert entry["record"]["record_id"] == "c"
