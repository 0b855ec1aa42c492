from __future__ import annotations

import io
import stat
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from broker_adapters.adapters.sftp import SftpSession, SftpTransport
from broker_adapters.contract import Batch, ErrorClass, FatalTransportError, ProcessingMode, Record, RetryableTransportError, default_config


class _Handle(io.BytesIO):
    def __init__(self, files, path, mode):
        super().__init__(files.get(path, b"") if "r" in mode else b"")
        self._files = files
        self._path = path
        self._mode = mode

    def close(self):
        if "w" in self._mode:
            self._files[self._path] = self.getvalue()
        super().close()


class FakeSftp:
    """Dictionary-backed stand-in for :class:`paramiko.SFTPClient`."""

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.mtimes: dict[str, int] = {}
        self.renames: list[tuple[str, str]] = []

    def put(self, path, data, mtime):
        self.files[path] = data
        self.mtimes[path] = mtime

    def listdir_attr(self, directory):
        prefix = directory.rstrip("/") + "/"
        return [
            SimpleNamespace(filename=path[len(prefix):], st_mode=stat.S_IFREG | 0o644, st_size=len(data), st_mtime=self.mtimes.get(path, 0))
            for path, data in self.files.items()
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        ]

    def open(self, path, mode="r"):
        if "r" in mode and path not in self.files:
            raise FileNotFoundError(path)
        return _Handle(self.files, path, mode)

    def stat(self, path):
        return SimpleNamespace(st_size=len(self.files[path]))

    def posix_rename(self, source, target):
        self.renames.append((source, target))
        self.files[target] = self.files.pop(source)

    def remove(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]

    def mkdir(self, path):
        raise OSError("exists")

    def close(self):
        return None


@pytest.fixture()
def sftp():
    return FakeSftp()


@pytest.fixture()
def session(sftp):
    return SftpSession(ssh=MagicMock(), sftp=sftp)


def _transport(**overrides):
    options = {"username": "broker", "directory": "/incoming", "password": "pw"}
    options.update(overrides)
    return SftpTransport("sftp.example.com", **options)


def test_fetch_orders_by_mtime_and_skips_staged_files(session, sftp):
    sftp.put("/incoming/b.xml", b"B", 20)
    sftp.put("/incoming/a.xml", b"A", 10)
    sftp.put("/incoming/c.xml.tmp", b"C", 5)

    batch = _transport().fetch(session, None, 10)

    assert [record.record_id for record in batch] == ["a.xml", "b.xml"]
    assert batch.records[0].payload == b"A"
    assert batch.end_cursor.value == 20_000


def test_deliver_stages_then_renames(session, sftp):
    result = _transport().deliver(session, Batch(records=[Record(record_id="asn-1.xml", payload=b"<asn/>")]))

    assert result.references == ("/incoming/asn-1.xml",)
    assert sftp.files == {"/incoming/asn-1.xml": b"<asn/>"}
    assert sftp.renames == [("/incoming/asn-1.xml.tmp", "/incoming/asn-1.xml")]


def test_deliver_io_errors_are_retryable(session, sftp):
    sftp.posix_rename = MagicMock(side_effect=OSError("channel closed"))

    with pytest.raises(RetryableTransportError):
        _transport().deliver(session, Batch(records=[Record(record_id="a.xml", payload=b"x")]))
    assert sftp.files == {}


def test_permission_errors_are_fatal(session, sftp):
    sftp.listdir_attr = MagicMock(side_effect=PermissionError("denied"))

    with pytest.raises(FatalTransportError) as excinfo:
        _transport().fetch(session, None, 10)
    assert excinfo.value.error_class == ErrorClass.AUTHENTICATION


def test_acknowledge_archives_sources(session, sftp):
    sftp.put("/incoming/a.xml", b"A", 10)
    transport = _transport(processing_mode=ProcessingMode.ARCHIVE)

    transport.acknowledge(session, transport.fetch(session, None, 10))

    assert list(sftp.files) == ["/incoming/archive/a.xml"]


def test_open_translates_authentication_failures():
    client = MagicMock()
    client.connect.side_effect = paramiko.AuthenticationException("bad password")
    with patch("broker_adapters.adapters.sftp.paramiko.SSHClient", return_value=client):
        with pytest.raises(FatalTransportError) as excinfo:
            _transport().open()

    assert excinfo.value.error_class == ErrorClass.AUTHENTICATION
    client.close.assert_called_once()


def test_open_connects_with_password():
    client = MagicMock()
    with patch("broker_adapters.adapters.sftp.paramiko.SSHClient", return_value=client):
        session = _transport(port=2222).open()

    kwargs = client.connect.call_args.kwargs
    assert kwargs["hostname"] == "sftp.example.com"
    assert kwargs["port"] == 2222
    assert kwargs["password"] == "pw"
    assert session.sftp is client.open_sftp.return_value


def test_credentials_are_required():
    with pytest.raises(FatalTransportError) as excinfo:
        SftpTransport.from_config(default_config(host="h", username="u", directory="/d"))

    assert excinfo.value.error_class == ErrorClass.CONFIGURATION
    with pytest.raises(FatalTransportError):
        SftpTransport.from_config(default_config(host="h", password="p"))
