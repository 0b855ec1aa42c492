from __future__ import annotations

import logging

import pytest

from broker_adapters.config import parse_settings
from broker_adapters.core.context import ExecutionContext, ExecutionOptions
from broker_adapters.core.logging import StructuredLogFormatter, bind_adapter, configure_logging, get_logger, log_progress


def test_execution_context_build_default(tmp_path):
    state_dir = tmp_path / "state"
    context = ExecutionContext.build_default(state_dir=state_dir, enabled_adapters=["alpha", "beta"], settings=parse_settings({}))

    assert context.state_dir == state_dir
    assert context.state_dir.exists()
    assert context.is_enabled("alpha")
    assert context.is_enabled("beta")
    assert not context.is_enabled("gamma")

    context.enable("gamma")
    assert context.is_enabled("gamma")
    context.disable("gamma")
    assert not context.is_enabled("gamma")

    assert isinstance(context.options, ExecutionOptions)


def test_empty_allowlist_enables_everything(tmp_path):
    context = ExecutionContext.build_default(state_dir=tmp_path, settings=parse_settings({}))

    assert context.is_enabled("anything")


@pytest.fixture
def reset_logging_handlers():
    root = logging.getLogger()
    existing_handlers = list(root.handlers)
    yield
    root.handlers = existing_handlers


class _ListHandler(logging.Handler):
    def __init__(self, formatter: logging.Formatter):
        super().__init__()
        self.records: list[logging.LogRecord] = []
        self.setFormatter(formatter)

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - trivial
        self.records.append(record)


def test_structured_formatter_appends_extras():
    formatter = StructuredLogFormatter(use_color=False)
    record = logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname=__file__,
        lineno=42,
        msg="Batch delivered",
        args=(),
        exc_info=None,
    )
    record.adapter_id = "orders-inbox"
    record.phase = "deliver"
    record.tags = ("edge",)

    formatted = formatter.format(record)

    assert "Batch delivered" in formatted
    assert "adapter_id=orders-inbox" in formatted
    assert "phase=deliver" in formatted
    assert "tags=[edge]" in formatted


def test_configure_logging_installs_structured_formatter(reset_logging_handlers):
    configure_logging(force=True)

    root = logging.getLogger()
    assert root.handlers, "expected at least one handler configured"
    assert isinstance(root.handlers[0].formatter, StructuredLogFormatter)


def test_bound_adapter_and_progress_extras(reset_logging_handlers):
    configure_logging(force=True)
    logger = bind_adapter(get_logger("test.progress", extra={"component": "poller"}), "orders-inbox")
    root = logging.getLogger()
    collector = _ListHandler(root.handlers[0].formatter)
    root.addHandler(collector)
    try:
        log_progress(logger, "Tick complete", phase="poll", state="idle", status="completed", extra={"records": 3})
    finally:
        root.removeHandler(collector)

    record = collector.records[0]
    assert getattr(record, "adapter_id") == "orders-inbox"
    assert getattr(record, "component") == "poller"
    assert getattr(record, "phase") == "poll"
    assert getattr(record, "records") == 3
    formatted = collector.format(record)
    assert "status=completed" in formatted
    assert "state=idle" in formatted


def test_context_logger_carries_observability_tags(tmp_path, reset_logging_handlers):
    context = ExecutionContext.build_default(
        state_dir=tmp_path,
        options=ExecutionOptions(observability_tags=("tenant-a",)),
        settings=parse_settings({}),
    )

    logger = context.get_logger("test.context")

    assert logger.extra["tags"] == ("tenant-a",)
