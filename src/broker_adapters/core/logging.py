"""
Centralised logging helpers for broker adapters.

The helpers provide a thin wrapper over :mod:`logging` that keeps configuration
deterministic while allowing callers to attach adapter identifiers and
observability tags taken from the execution context. Modules should obtain loggers
via :func:`get_logger` instead of instantiating their own handlers to ensure
consistent formatting.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from copy import copy
from functools import lru_cache
from logging import Logger, LoggerAdapter
from typing import Any, Iterable, Mapping, MutableMapping, Optional, Sequence

DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LEVEL = "INFO"
_ENV_LEVEL = "BROKER_ADAPTERS_LOG_LEVEL"
_ENV_COLOR = "BROKER_ADAPTERS_LOG_COLOR"
_EXTRA_FOCUS_ORDER: Sequence[str] = (
    "adapter_id",
    "phase",
    "state",
    "status",
    "operation",
    "attempt",
    "delay",
    "cursor",
    "batch_size",
    "records",
    "error_class",
    "duration",
    "tags",
)

_LEVEL_STYLES = {
    "DEBUG": "\033[36m",  # Cyan
    "INFO": "\033[32m",  # Green
    "WARNING": "\033[33m",  # Yellow
    "ERROR": "\033[31m",  # Red
    "CRITICAL": "\033[95m",  # Bright magenta
}
_RESET = "\033[0m"

_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
    "asctime",
}


def _resolve_level(level: Optional[int | str]) -> int:
    if isinstance(level, int):
        return level
    candidate = (level or os.getenv(_ENV_LEVEL) or DEFAULT_LEVEL).upper()
    resolved = logging.getLevelName(candidate)
    return resolved if isinstance(resolved, int) else logging.INFO


def _coerce_bool(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on", "enabled"}:
        return True
    if lowered in {"0", "false", "no", "off", "disabled"}:
        return False
    return None


def _supports_color(stream: Any) -> bool:
    preference = os.getenv(_ENV_COLOR)
    if preference:
        resolved = _coerce_bool(preference)
        if resolved is not None:
            return resolved
    return hasattr(stream, "isatty") and bool(stream.isatty())


def _iter_extras(record: logging.LogRecord) -> Iterable[tuple[str, Any]]:
    payload = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS and not key.startswith("_") and value is not None}

    for key in _EXTRA_FOCUS_ORDER:
        if key in payload:
            yield key, payload.pop(key)

    for key in sorted(payload):
        yield key, payload[key]


def _format_extra_value(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        return "[" + ", ".join(_format_extra_value(item) for item in value) + "]"
    if isinstance(value, Mapping):
        try:
            return json.dumps(value, ensure_ascii=False, default=str)
        except TypeError:
            return repr(dict(value))
    if isinstance(value, float):
        return f"{value:.4g}"
    if hasattr(value, "value") and hasattr(value, "name") and not isinstance(value, (str, int)):
        return str(value.value)
    return str(value)


class StructuredLogFormatter(logging.Formatter):
    """Formatter that appends structured extras and supports optional colour output."""

    def __init__(self, *, use_color: bool = False) -> None:
        super().__init__(DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        working = copy(record)
        if self.use_color:
            working.levelname = self._colourise_level(working.levelname)
        base = super().format(working)
        extras = " ".join(f"{key}={_format_extra_value(value)}" for key, value in _iter_extras(record))
        if extras:
            return f"{base} | {extras}"
        return base

    @staticmethod
    def _colourise_level(levelname: str) -> str:
        style = _LEVEL_STYLES.get(levelname.strip().upper())
        if not style:
            return levelname
        return f"{style}{levelname}{_RESET}"


class StructuredLoggerAdapter(LoggerAdapter):
    """Adapter that merges bound context with the ``extra`` passed on each call."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        merged: MutableMapping[str, object] = {}
        if isinstance(self.extra, Mapping):
            merged.update({key: value for key, value in self.extra.items() if value is not None})
        call_extra = kwargs.get("extra")
        if isinstance(call_extra, Mapping):
            merged.update(call_extra)
        kwargs["extra"] = merged
        return msg, kwargs


@lru_cache(maxsize=1)
def _base_logger_configured() -> bool:
    return False


def _build_handler(level: Optional[int | str]) -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(_resolve_level(level))
    formatter = StructuredLogFormatter(use_color=_supports_color(handler.stream))
    handler.setFormatter(formatter)
    return handler


def _set_base_config(level: Optional[int | str] = None) -> None:
    if _base_logger_configured.cache_info().currsize == 0:
        handler = _build_handler(level)
        logging.basicConfig(level=_resolve_level(level), handlers=[handler])
        _base_logger_configured.cache_clear()
        _base_logger_configured()


def configure_logging(level: Optional[int | str] = None, *, force: bool = False) -> None:
    """
    Configure root logging handlers unless already initialised.

    Parameters
    ----------
    level:
        Optional logging level override. Falls back to ``BROKER_ADAPTERS_LOG_LEVEL`` or ``INFO``.
    force:
        When ``True`` the configuration is reapplied even if previously initialised.
    """

    if force:
        handler = _build_handler(level)
        logging.basicConfig(level=_resolve_level(level), handlers=[handler], force=True)
        _base_logger_configured.cache_clear()
        _base_logger_configured()
        return
    _set_base_config(level)


def _merge_extra(
    *,
    tags: Optional[Sequence[str]],
    extra: Optional[Mapping[str, object]],
) -> MutableMapping[str, object]:
    payload: MutableMapping[str, object] = {}
    if tags:
        payload["tags"] = tuple(tags)
    if extra:
        payload.update({key: value for key, value in extra.items() if value is not None})
    return payload


def get_logger(
    name: str,
    *,
    level: Optional[int | str] = None,
    tags: Optional[Sequence[str]] = None,
    extra: Optional[Mapping[str, object]] = None,
) -> LoggerAdapter:
    """
    Return a configured :class:`StructuredLoggerAdapter` instance.

    Parameters
    ----------
    name:
        Logger namespace, typically ``__name__`` or a structured label.
    level:
        Optional per-logger level override.
    tags:
        Optional observability tags attached to the ``extra`` payload.
    extra:
        Additional structured metadata recorded with each log entry, for example
        ``{"adapter_id": "orders_sftp"}``.
    """

    configure_logging(level)
    base: Logger = logging.getLogger(name)
    if level is not None:
        base.setLevel(_resolve_level(level))
    return StructuredLoggerAdapter(base, _merge_extra(tags=tags, extra=extra))


def bind_tags(logger: LoggerAdapter, tags: Sequence[str]) -> LoggerAdapter:
    """
    Create a child logger with additional observability tags.

    The helper avoids mutating the original adapter to keep log context immutable.
    """

    current = dict(logger.extra) if isinstance(logger.extra, Mapping) else {}
    merged_tags = tuple(dict.fromkeys((*(current.get("tags", ())), *tags)))
    new_extra = dict(current)
    new_extra["tags"] = merged_tags
    return StructuredLoggerAdapter(logger.logger, new_extra)


def bind_adapter(logger: LoggerAdapter, adapter_id: str) -> LoggerAdapter:
    """Return a child logger that stamps every entry with ``adapter_id``."""

    current = dict(logger.extra) if isinstance(logger.extra, Mapping) else {}
    current["adapter_id"] = adapter_id
    return StructuredLoggerAdapter(logger.logger, current)


def log_progress(
    logger: LoggerAdapter | Logger,
    message: str,
    *,
    phase: Optional[str] = None,
    state: Optional[str] = None,
    status: Optional[str] = None,
    level: int = logging.INFO,
    extra: Optional[Mapping[str, object]] = None,
) -> None:
    """
    Emit a progress log with structured metadata so downstream observers can
    easily identify the adapter phase and outcome.
    """

    payload: MutableMapping[str, object] = {}
    if extra:
        payload.update(extra)
    if phase:
        payload["phase"] = phase
    if state:
        payload["state"] = state
    if status:
        payload["status"] = status
    logger.log(level, message, extra=payload or None)
