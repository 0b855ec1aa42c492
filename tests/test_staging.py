from __future__ import annotations

import pytest

from broker_adapters.contract import FatalTransportError, FilePlacement, RetryableTransportError
from broker_adapters.contract.staging import LocalStagingFileSystem, safe_file_name, stage_then_rename


class ShortWriteFileSystem(LocalStagingFileSystem):
    """Reports one byte fewer than was written."""

    def size(self, path: str) -> int:
        return super().size(path) - 1


class FailingRenameFileSystem(LocalStagingFileSystem):
    def rename(self, source: str, target: str) -> None:
        raise OSError("rename refused")


def test_atomic_placement_leaves_only_final_file(tmp_path):
    path = stage_then_rename(LocalStagingFileSystem(), str(tmp_path), "orders.json", b'{"id": 1}')

    assert path == str(tmp_path / "orders.json")
    assert (tmp_path / "orders.json").read_bytes() == b'{"id": 1}'
    assert sorted(entry.name for entry in tmp_path.iterdir()) == ["orders.json"]


def test_atomic_placement_overwrites_existing_target(tmp_path):
    (tmp_path / "orders.json").write_bytes(b"old")

    stage_then_rename(LocalStagingFileSystem(), str(tmp_path), "orders.json", b"new")

    assert (tmp_path / "orders.json").read_bytes() == b"new"


def test_direct_placement_writes_in_place(tmp_path):
    stage_then_rename(LocalStagingFileSystem(), str(tmp_path / "nested"), "a.csv", b"x,y", placement=FilePlacement.DIRECT)

    assert (tmp_path / "nested" / "a.csv").read_bytes() == b"x,y"


def test_size_mismatch_removes_staged_file(tmp_path):
    with pytest.raises(RetryableTransportError):
        stage_then_rename(ShortWriteFileSystem(), str(tmp_path), "a.csv", b"abc")

    assert list(tmp_path.iterdir()) == []


def test_size_check_can_be_disabled(tmp_path):
    stage_then_rename(ShortWriteFileSystem(), str(tmp_path), "a.csv", b"abc", verify_size=False)

    assert (tmp_path / "a.csv").exists()


def test_failed_rename_cleans_up(tmp_path):
    with pytest.raises(OSError):
        stage_then_rename(FailingRenameFileSystem(), str(tmp_path), "a.csv", b"abc", temporary_extension=".part")

    assert not (tmp_path / "a.csv.part").exists()
    assert not (tmp_path / "a.csv").exists()


@pytest.mark.parametrize("name", ["", " ", ".", "..", "../etc/passwd", "a/b", "a\\b", "nul\x00"])
def test_unsafe_file_names_are_rejected(name):
    with pytest.raises(FatalTransportError):
        safe_file_name(name)


def test_safe_file_name_strips_whitespace():
    assert safe_file_name("  report.csv ") == "report.csv"
