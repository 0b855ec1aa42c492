from __future__ import annotations

from importlib import resources
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import yaml
from typer.testing import CliRunner

from broker_adapters.adapters.base import Ack, BaseTransport
from broker_adapters.cli.main import app
from broker_adapters.contract import (
    Batch,
    CommitResult,
    ConnectionLeaseManager,
    Cursor,
    CursorStore,
    DedupIndex,
    DeliveryExecutor,
    ErrorBudget,
    MemoryStateStore,
    PollingScheduler,
    Record,
    RetryPolicy,
    default_config,
)


class FakeClock:
    """Manually advanced epoch clock; ``sleep`` advances it instead of blocking."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeTransport(BaseTransport):
    """In-memory transport: serves ``records`` by id cursor and records deliveries."""

    name = "fake"

    def __init__(self, records: Optional[List[Record]] = None, *, atomic: bool = False) -> None:
        self.records = list(records or [])
        self.supports_atomic_commit = atomic
        self.fetch_errors: List[BaseException] = []
        self.deliver_errors: Dict[str, List[BaseException]] = {}
        self.delivered: List[str] = []
        self.acknowledged: List[str] = []
        self.fetch_calls = 0
        self.deliver_calls = 0
        self.opened = 0
        self.closed = 0

    def open(self) -> str:
        self.opened += 1
        return f"session-{self.opened}"

    def close(self, session) -> None:
        self.closed += 1

    def fetch(self, session, cursor, max_items, *, timeout=None) -> Batch:
        self.fetch_calls += 1
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        after = [record for record in self.records if record.cursor is not None and record.cursor.is_after(cursor)]
        return Batch(records=after[:max_items], start_cursor=cursor)

    def deliver(self, session, batch, *, timeout=None) -> CommitResult:
        self.deliver_calls += 1
        for record in batch:
            errors = self.deliver_errors.get(record.record_id)
            if errors:
                raise errors.pop(0)
        ids = [record.record_id for record in batch]
        self.delivered.extend(ids)
        return CommitResult(committed=len(ids), references=tuple(ids))

    def acknowledge(self, session, batch) -> None:
        self.acknowledged.extend(record.record_id for record in batch)


class RecordingSink:
    """Sink collecting handed-off records; ids in ``reject`` are answered with NACK."""

    def __init__(self, reject: tuple[str, ...] = ()) -> None:
        self.records: List[Record] = []
        self.reject_ids = set(reject)
        self.calls = 0

    def hand_off(self, record: Record) -> Ack:
        self.calls += 1
        if record.record_id in self.reject_ids:
            return Ack.NACK
        self.records.append(record)
        return Ack.ACK

    @property
    def ids(self) -> List[str]:
        return [record.record_id for record in self.records]


class RecordingDeadLetters:
    def __init__(self) -> None:
        self.rejected: List[tuple[str, str, str]] = []

    def reject(self, adapter_id: str, record: Record, reason: str) -> None:
        self.rejected.append((adapter_id, record.record_id, reason))

    @property
    def ids(self) -> List[str]:
        return [record_id for _, record_id, _ in self.rejected]


def make_records(count: int, *, start: int = 1) -> List[Record]:
    return [Record(record_id=f"r{index}", payload=f"payload-{index}".encode(), cursor=Cursor.identifier(index)) for index in range(start, start + count)]


@pytest.fixture(scope="session")
def catalog_file() -> Path:
    with resources.as_file(resources.files("broker_adapters.resources.adapters") / "catalog.yaml") as ref:
        return Path(ref)


@pytest.fixture()
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def cli_app():
    return app


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock) -> MemoryStateStore:
    return MemoryStateStore(clock=clock)


@pytest.fixture()
def records():
    return make_records


@pytest.fixture()
def fake_transport():
    return FakeTransport


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def make_sink():
    return RecordingSink


@pytest.fixture()
def dead_letters() -> RecordingDeadLetters:
    return RecordingDeadLetters()


def _retry(adapter_id, config, store, clock) -> RetryPolicy:
    budget = ErrorBudget.from_config(adapter_id, config, store=store, clock=clock)
    return RetryPolicy.from_config(config, adapter_id=adapter_id, budget=budget, sleep=clock.sleep)


@pytest.fixture()
def build_scheduler(clock, store, dead_letters):
    """Factory wiring a :class:`PollingScheduler` around a transport and sink."""

    def _build(transport, sink, *, dedup: bool = False, **overrides) -> PollingScheduler:
        overrides.setdefault("retryDelayMs", 0)
        config = default_config(**overrides)
        retry = _retry("inbound-test", config, store, clock)
        leases = ConnectionLeaseManager.from_config(transport, config, adapter_id="inbound-test", clock=clock)
        index = DedupIndex(store, "inbound-test") if dedup else None
        return PollingScheduler(
            "inbound-test",
            transport,
            leases,
            sink,
            CursorStore(store),
            retry,
            config=config,
            dedup=index,
            dead_letters=dead_letters,
            clock=clock,
        )

    return _build


@pytest.fixture()
def build_executor(clock, store, dead_letters):
    """Factory wiring a :class:`DeliveryExecutor` around a transport."""

    def _build(transport, **overrides) -> DeliveryExecutor:
        overrides.setdefault("retryDelayMs", 0)
        config = default_config(**overrides)
        retry = _retry("outbound-test", config, store, clock)
        leases = ConnectionLeaseManager.from_config(transport, config, adapter_id="outbound-test", clock=clock)
        index = DedupIndex(store, "outbound-test") if config.idempotent else None
        return DeliveryExecutor("outbound-test", transport, leases, retry, config=config, dedup=index, dead_letters=dead_letters, clock=clock)

    return _build


@pytest.fixture()
def local_catalog(tmp_path) -> Path:
    """Catalogue with local directory adapters rooted in ``tmp_path``."""

    inbox = tmp_path / "inbox"
    outbox = tmp_path / "outbox"
    inbox.mkdir()
    outbox.mkdir()
    document = {
        "defaults": {"retryDelayMs": 0, "maxRetryAttempts": 2, "maxErrorThreshold": 3},
        "types": {"file": {"filePlacement": "ATOMIC", "verifyFileSize": True}},
        "adapters": [
            {
                "id": "drop-in",
                "name": "Drop directory",
                "type": "file",
                "direction": "inbound",
                "description": "Reads dropped files.",
                "config": {"directory": str(inbox), "enableDuplicateHandling": True, "webhookSecret": "s3cret"},
            },
            {
                "id": "drop-out",
                "name": "Export directory",
                "type": "file",
                "direction": "outbound",
                "description": "Writes exported files.",
                "config": {"directory": str(outbox), "idempotent": True, "batchSize": 10},
            },
            {
                "id": "retired",
                "name": "Retired bridge",
                "type": "file",
                "direction": "outbound",
                "status": "blocked",
                "blocked_reason": "Decommissioned.",
                "config": {"directory": str(outbox)},
            },
        ],
    }
    path = tmp_path / "catalog.yaml"
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    return path
