"""
SFTP transport backed by paramiko.

Reads follow the same modification-time cursor as :mod:`.files`; writes use
stage-then-rename with ``posix_rename`` so remote readers never observe a
partial file.
"""

from __future__ import annotations

import fnmatch
import io
import posixpath
import stat
from dataclasses import dataclass
from typing import Any, List, Optional

import paramiko

from ..contract.errors import ErrorClass, FatalTransportError, RetryableTransportError, TransportError
from ..contract.models import Batch, CommitResult, Cursor
from ..contract.options import EffectiveConfig, FilePlacement, ProcessingMode
from ..contract.staging import stage_then_rename
from ..core.logging import get_logger
from .base import BaseTransport
from .files import FileEntry, entries_to_batch, select_after_cursor

LOGGER = get_logger(__name__)


@dataclass(slots=True)
class SftpSession:
    """SSH connection plus the SFTP channel opened on it."""

    ssh: paramiko.SSHClient
    sftp: paramiko.SFTPClient

    def close(self) -> None:
        self.sftp.close()
        self.ssh.close()


class SftpFileSystem:
    """:class:`~broker_adapters.contract.staging.StagingFileSystem` over an SFTP channel."""

    def __init__(self, sftp: paramiko.SFTPClient) -> None:
        self.sftp = sftp

    def join(self, directory: str, name: str) -> str:
        return posixpath.join(directory, name)

    def write_bytes(self, path: str, data: bytes) -> None:
        with self.sftp.open(path, "wb") as handle:
            handle.write(data)

    def size(self, path: str) -> int:
        return int(self.sftp.stat(path).st_size or 0)

    def rename(self, source: str, target: str) -> None:
        self.sftp.posix_rename(source, target)

    def remove(self, path: str) -> None:
        try:
            self.sftp.remove(path)
        except FileNotFoundError:
            return


def _translate(exc: Exception, action: str) -> TransportError:
    if isinstance(exc, paramiko.AuthenticationException):
        return FatalTransportError(f"SFTP authentication failed during {action}: {exc}", error_class=ErrorClass.AUTHENTICATION)
    if isinstance(exc, PermissionError):
        return FatalTransportError(f"SFTP permission denied during {action}: {exc}", error_class=ErrorClass.AUTHENTICATION)
    return RetryableTransportError(f"SFTP {action} failed: {exc}", error_class=ErrorClass.CONNECTION)


class SftpTransport(BaseTransport):
    """
    Poll and write files on an SFTP server.

    Parameters
    ----------
    host, port, username:
        Server coordinates.
    password, private_key:
        Credentials; ``private_key`` holds the PEM text of an RSA key.
    directory:
        Remote directory to read from or write to.
    """

    name = "sftp"
    supports_atomic_commit = False

    def __init__(
        self,
        host: str,
        *,
        username: str,
        directory: str,
        port: int = 22,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        pattern: str = "*",
        placement: FilePlacement = FilePlacement.ATOMIC,
        temporary_extension: str = ".tmp",
        verify_size: bool = True,
        processing_mode: ProcessingMode = ProcessingMode.NONE,
        archive_directory: Optional[str] = None,
        connect_timeout: float = 30.0,
    ) -> None:
        if not password and not private_key:
            raise FatalTransportError("SFTP adapters require a password or a private key.", error_class=ErrorClass.CONFIGURATION)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key = private_key
        self.directory = directory
        self.pattern = pattern
        self.placement = placement
        self.temporary_extension = temporary_extension
        self.verify_size = verify_size
        self.processing_mode = processing_mode
        self.archive_directory = archive_directory or posixpath.join(directory, "archive")
        self.connect_timeout = connect_timeout

    @classmethod
    def from_config(cls, config: EffectiveConfig) -> "SftpTransport":
        host = config.option("host")
        directory = config.option("directory")
        username = config.option("username")
        if not host or not directory or not username:
            raise FatalTransportError("SFTP adapters require 'host', 'username' and 'directory' options.", error_class=ErrorClass.CONFIGURATION)
        return cls(
            str(host),
            username=str(username),
            directory=str(directory),
            port=int(config.option("port", 22)),
            password=config.option("password"),
            private_key=config.option("privateKey"),
            pattern=str(config.option("pattern", "*")),
            placement=config.file_placement,
            temporary_extension=config.temporary_file_extension,
            verify_size=config.verify_file_size,
            processing_mode=config.processing_mode,
            archive_directory=config.option("archiveDirectory"),
            connect_timeout=config.connection_timeout,
        )

    def open(self) -> SftpSession:
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs: dict[str, Any] = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.connect_timeout,
            "look_for_keys": False,
            "allow_agent": False,
        }
        if self.private_key:
            kwargs["pkey"] = paramiko.RSAKey.from_private_key(io.StringIO(self.private_key))
        else:
            kwargs["password"] = self.password
        try:
            ssh.connect(**kwargs)
            session = SftpSession(ssh=ssh, sftp=ssh.open_sftp())
        except (paramiko.SSHException, OSError) as exc:
            ssh.close()
            raise _translate(exc, "connect") from exc
        LOGGER.info("SFTP connection established", extra={"host": self.host, "port": self.port})
        return session

    def close(self, session: SftpSession) -> None:
        session.close()

    def test_connection(self, session: SftpSession) -> bool:
        transport = session.ssh.get_transport()
        return bool(transport is not None and transport.is_active())

    def _list(self, session: SftpSession) -> List[FileEntry]:
        entries: List[FileEntry] = []
        for attributes in session.sftp.listdir_attr(self.directory):
            name = attributes.filename
            if not stat.S_ISREG(attributes.st_mode or 0):
                continue
            if name.endswith(self.temporary_extension) or not fnmatch.fnmatch(name, self.pattern):
                continue
            entries.append(
                FileEntry(
                    name=name,
                    path=posixpath.join(self.directory, name),
                    size=int(attributes.st_size or 0),
                    mtime_ms=int(attributes.st_mtime or 0) * 1000,
                )
            )
        return entries

    def fetch(self, session: SftpSession, cursor: Optional[Cursor], max_items: int, *, timeout: Optional[float] = None) -> Batch:
        try:
            selected = select_after_cursor(self._list(session), cursor, max_items)
            payloads = []
            for entry in selected:
                with session.sftp.open(entry.path, "rb") as handle:
                    payloads.append(handle.read())
        except (paramiko.SSHException, OSError) as exc:
            raise _translate(exc, "fetch") from exc
        return entries_to_batch(selected, payloads, cursor)

    def deliver(self, session: SftpSession, batch: Batch, *, timeout: Optional[float] = None) -> CommitResult:
        fs = SftpFileSystem(session.sftp)
        references: List[str] = []
        try:
            for record in batch:
                references.append(
                    stage_then_rename(
                        fs,
                        self.directory,
                        record.record_id,
                        record.payload,
                        placement=self.placement,
                        temporary_extension=self.temporary_extension,
                        verify_size=self.verify_size,
                    )
                )
        except (paramiko.SSHException, OSError) as exc:
            raise _translate(exc, "deliver") from exc
        return CommitResult(committed=len(references), references=tuple(references))

    def acknowledge(self, session: SftpSession, batch: Batch) -> None:
        if self.processing_mode == ProcessingMode.NONE:
            return
        for record in batch:
            source = str(record.metadata.get("path", posixpath.join(self.directory, record.record_id)))
            if self.processing_mode == ProcessingMode.DELETE:
                session.sftp.remove(source)
            elif self.processing_mode == ProcessingMode.ARCHIVE:
                try:
                    session.sftp.mkdir(self.archive_directory)
                except OSError:
                    LOGGER.debug("Archive directory already present", extra={"path": self.archive_directory})
                session.sftp.posix_rename(source, posixpath.join(self.archive_directory, posixpath.basename(source)))
            else:
                raise ValueError(f"Unhandled processing mode: {self.processing_mode!r}")
