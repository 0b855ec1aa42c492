"""
Transports and sinks at the edge of the adapter execution contract.

Each transport implements a small, capability-based surface (open, fetch,
deliver, test) for one wire protocol. Everything operational is handled by
:mod:`broker_adapters.contract`.
"""

from .base import Ack, BaseTransport, DeadLetterSink, Sink, Transport, VerificationResult
from .files import FileEntry, LocalFileTransport, select_after_cursor
from .http import HttpTransport
from .sftp import SftpFileSystem, SftpTransport
from .sinks import CallableSink, JsonLinesDeadLetterSink, JsonLinesSink, LoggingDeadLetterSink, MemorySink

__all__ = [
    "Ack",
    "BaseTransport",
    "CallableSink",
    "DeadLetterSink",
    "FileEntry",
    "HttpTransport",
    "JsonLinesDeadLetterSink",
    "JsonLinesSink",
    "LocalFileTransport",
    "LoggingDeadLetterSink",
    "MemorySink",
    "SftpFileSystem",
    "SftpTransport",
    "Sink",
    "Transport",
    "VerificationResult",
    "select_after_cursor",
]
