"""
Local directory transport.

Inbound, files in a directory are read in modification-time order after the
stored timestamp cursor. Outbound, each record becomes one file written through
:func:`~broker_adapters.contract.staging.stage_then_rename`.
"""

from __future__ import annotations

import fnmatch
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence

from ..contract.errors import ErrorClass, FatalTransportError, RetryableTransportError
from ..contract.models import Batch, CommitResult, Cursor, CursorKind, Record
from ..contract.options import EffectiveConfig, FilePlacement, ProcessingMode
from ..contract.staging import LocalStagingFileSystem, stage_then_rename
from ..core.logging import get_logger
from .base import BaseTransport

LOGGER = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class FileEntry:
    """Listing entry shared by the local and SFTP transports."""

    name: str
    path: str
    size: int
    mtime_ms: int


def select_after_cursor(entries: Sequence[FileEntry], cursor: Optional[Cursor], max_items: int) -> List[FileEntry]:
    """
    Return up to ``max_items`` entries strictly newer than ``cursor``.

    Entries sharing a modification time are never split across batches because
    the cursor only records the timestamp; when a single group alone exceeds
    ``max_items`` the whole group is returned.
    """

    threshold = int(cursor.value) if cursor is not None and cursor.kind == CursorKind.TIMESTAMP else None
    candidates = sorted((entry for entry in entries if threshold is None or entry.mtime_ms > threshold), key=lambda entry: (entry.mtime_ms, entry.name))
    if len(candidates) <= max_items:
        return candidates
    selected = candidates[:max_items]
    boundary = candidates[max_items].mtime_ms
    if selected[-1].mtime_ms != boundary:
        return selected
    trimmed = [entry for entry in selected if entry.mtime_ms != boundary]
    if trimmed:
        return trimmed
    return [entry for entry in candidates if entry.mtime_ms == boundary]


def entries_to_batch(entries: Sequence[FileEntry], payloads: Sequence[bytes], start_cursor: Optional[Cursor]) -> Batch:
    records = [
        Record(
            record_id=entry.name,
            payload=payload,
            cursor=Cursor.timestamp(entry.mtime_ms),
            metadata={"path": entry.path, "size": entry.size, "mtime_ms": entry.mtime_ms},
        )
        for entry, payload in zip(entries, payloads)
    ]
    end_cursor = records[-1].cursor if records else None
    return Batch(records=records, start_cursor=start_cursor, end_cursor=end_cursor)


class LocalFileTransport(BaseTransport):
    """
    Poll and write files in a local directory.

    Parameters
    ----------
    directory:
        Directory to read from (inbound) or write to (outbound).
    pattern:
        Glob applied to file names when listing.
    placement:
        Direct or staged writes for outbound records.
    temporary_extension:
        Suffix of staged files; such files are never picked up inbound.
    verify_size:
        Check the staged file size before renaming.
    processing_mode:
        What happens to a source file after its batch was handed off.
    archive_directory:
        Target of ``ProcessingMode.ARCHIVE``.
    """

    name = "file"
    supports_atomic_commit = False

    def __init__(
        self,
        directory: Path | str,
        *,
        pattern: str = "*",
        placement: FilePlacement = FilePlacement.ATOMIC,
        temporary_extension: str = ".tmp",
        verify_size: bool = True,
        processing_mode: ProcessingMode = ProcessingMode.NONE,
        archive_directory: Path | str | None = None,
    ) -> None:
        self.directory = Path(directory)
        self.pattern = pattern
        self.placement = placement
        self.temporary_extension = temporary_extension
        self.verify_size = verify_size
        self.processing_mode = processing_mode
        self.archive_directory = Path(archive_directory) if archive_directory else self.directory / "archive"
        self.fs = LocalStagingFileSystem()

    @classmethod
    def from_config(cls, config: EffectiveConfig) -> "LocalFileTransport":
        directory = config.option("directory")
        if not directory:
            raise FatalTransportError("File adapters require a 'directory' option.", error_class=ErrorClass.CONFIGURATION)
        return cls(
            directory,
            pattern=str(config.option("pattern", "*")),
            placement=config.file_placement,
            temporary_extension=config.temporary_file_extension,
            verify_size=config.verify_file_size,
            processing_mode=config.processing_mode,
            archive_directory=config.option("archiveDirectory"),
        )

    def open(self) -> Path:
        if not self.directory.is_dir():
            raise RetryableTransportError(f"Directory '{self.directory}' is not available.", error_class=ErrorClass.CONNECTION)
        return self.directory

    def test_connection(self, session: Any) -> bool:
        return self.directory.is_dir()

    def _list(self) -> List[FileEntry]:
        entries: List[FileEntry] = []
        for path in self.directory.iterdir():
            if not path.is_file() or path.name.endswith(self.temporary_extension) or not fnmatch.fnmatch(path.name, self.pattern):
                continue
            stat = path.stat()
            entries.append(FileEntry(name=path.name, path=str(path), size=stat.st_size, mtime_ms=stat.st_mtime_ns // 1_000_000))
        return entries

    def fetch(self, session: Any, cursor: Optional[Cursor], max_items: int, *, timeout: Optional[float] = None) -> Batch:
        selected = select_after_cursor(self._list(), cursor, max_items)
        payloads = [Path(entry.path).read_bytes() for entry in selected]
        return entries_to_batch(selected, payloads, cursor)

    def deliver(self, session: Any, batch: Batch, *, timeout: Optional[float] = None) -> CommitResult:
        references = [
            stage_then_rename(
                self.fs,
                str(self.directory),
                record.record_id,
                record.payload,
                placement=self.placement,
                temporary_extension=self.temporary_extension,
                verify_size=self.verify_size,
            )
            for record in batch
        ]
        return CommitResult(committed=len(references), references=tuple(references))

    def acknowledge(self, session: Any, batch: Batch) -> None:
        if self.processing_mode == ProcessingMode.NONE:
            return
        for record in batch:
            source = Path(str(record.metadata.get("path", self.directory / record.record_id)))
            if not source.exists():
                continue
            if self.processing_mode == ProcessingMode.DELETE:
                source.unlink()
            elif self.processing_mode == ProcessingMode.ARCHIVE:
                self.archive_directory.mkdir(parents=True, exist_ok=True)
                shutil.move(str(source), str(self.archive_directory / source.name))
            else:
                raise ValueError(f"Unhandled processing mode: {self.processing_mode!r}")
        LOGGER.debug("Processed source files", extra={"records": len(batch), "mode": self.processing_mode.value})
