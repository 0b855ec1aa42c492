"""
Stage-then-rename writes for file-style targets.

Downstream readers of a target directory must never observe a partially written
file. :func:`stage_then_rename` writes the payload under a temporary name in the
same directory, verifies it and atomically renames it into place. The protocol
is shared by the local directory and SFTP transports through the small
:class:`StagingFileSystem` interface.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol

from ..core.logging import get_logger
from .errors import ErrorClass, FatalTransportError, RetryableTransportError
from .options import FilePlacement

LOGGER = get_logger(__name__)


class StagingFileSystem(Protocol):
    def join(self, directory: str, name: str) -> str:
        ...

    def write_bytes(self, path: str, data: bytes) -> None:
        ...

    def size(self, path: str) -> int:
        ...

    def rename(self, source: str, target: str) -> None:
        """Atomically move ``source`` over ``target``."""

    def remove(self, path: str) -> None:
        ...


class LocalStagingFileSystem:
    """Local filesystem implementation backed by :func:`os.replace`."""

    def join(self, directory: str, name: str) -> str:
        return str(Path(directory) / name)

    def write_bytes(self, path: str, data: bytes) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())

    def size(self, path: str) -> int:
        return Path(path).stat().st_size

    def rename(self, source: str, target: str) -> None:
        os.replace(source, target)

    def remove(self, path: str) -> None:
        Path(path).unlink(missing_ok=True)


def safe_file_name(name: str) -> str:
    """Reject names that would escape the target directory."""

    candidate = name.strip()
    if not candidate or candidate in {".", ".."} or "/" in candidate or "\\" in candidate or "\x00" in candidate:
        raise FatalTransportError(f"Invalid target file name: {name!r}", error_class=ErrorClass.MALFORMED)
    return candidate


def stage_then_rename(
    fs: StagingFileSystem,
    directory: str,
    name: str,
    data: bytes,
    *,
    placement: FilePlacement = FilePlacement.ATOMIC,
    temporary_extension: str = ".tmp",
    verify_size: bool = True,
) -> str:
    """
    Write ``data`` to ``directory/name`` and return the final path.

    With ``FilePlacement.ATOMIC`` the payload lands in ``name + temporary_extension``
    first and is renamed only after the size check passed; the temporary file is
    removed on any failure. ``FilePlacement.DIRECT`` writes in place.
    """

    final_path = fs.join(directory, safe_file_name(name))
    if placement == FilePlacement.DIRECT:
        fs.write_bytes(final_path, data)
        _verify(fs, final_path, data, verify_size)
        return final_path
    if placement != FilePlacement.ATOMIC:
        raise ValueError(f"Unhandled file placement: {placement!r}")

    staging_path = final_path + temporary_extension
    try:
        fs.write_bytes(staging_path, data)
        _verify(fs, staging_path, data, verify_size)
        fs.rename(staging_path, final_path)
    except BaseException:
        try:
            fs.remove(staging_path)
        except Exception as cleanup_exc:
            LOGGER.warning("Failed to remove staged file", extra={"path": staging_path, "error": str(cleanup_exc)})
        raise
    LOGGER.debug("Committed staged file", extra={"path": final_path, "bytes": len(data)})
    return final_path


def _verify(fs: StagingFileSystem, path: str, data: bytes, verify_size: bool) -> None:
    if not verify_size:
        return
    written = fs.size(path)
    if written != len(data):
        raise RetryableTransportError(f"Size mismatch for '{path}': wrote {written} of {len(data)} bytes.", error_class=ErrorClass.CONNECTION)
