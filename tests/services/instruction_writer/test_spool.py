from __future__ import annotations

from pathlib import Path

import pytest

from manta_gc.instruction_writer import spool
from manta_gc.instruction_writer.spool import SpoolConfigurationError, SpoolWriteError, SpoolWriter


def test_write_renames_complete_file_into_place(tmp_path: Path) -> None:
    root = tmp_path / "spool"
    writer = SpoolWriter(root)
    writer.ensure_root()
    target = root / "s1" / "2019-05-01-12:34:56-zone-1-X-tok-mako-s1"

    ref = writer.write(target, "mako\ts1\tacct1\tobj1\n")

    assert ref.path == str(target)
    assert target.read_text(encoding="utf-8") == "mako\ts1\tacct1\tobj1\n"
    assert ref.bytes_written == len("mako\ts1\tacct1\tobj1\n")
    # Nothing is left behind in the scratch directory.
    assert (root / "s1.tmp").is_dir()
    assert list((root / "s1.tmp").iterdir()) == []


def test_repeated_writes_into_existing_directories_succeed(tmp_path: Path) -> None:
    root = tmp_path / "spool"
    writer = SpoolWriter(root, fsync=False)
    writer.ensure_root()
    writer.ensure_root()
    for idx in range(3):
        writer.write(root / "s1" / f"file-{idx}-mako-s1", f"line {idx}\n")
    assert sorted(path.name for path in (root / "s1").iterdir()) == [
        "file-0-mako-s1",
        "file-1-mako-s1",
        "file-2-mako-s1",
    ]


def test_scratch_collision_aborts_without_touching_target(tmp_path: Path) -> None:
    root = tmp_path / "spool"
    writer = SpoolWriter(root)
    writer.ensure_root()
    (root / "s1.tmp").mkdir()
    (root / "s1.tmp" / "dup-mako-s1").write_text("stale", encoding="utf-8")

    with pytest.raises(SpoolWriteError) as excinfo:
        writer.write(root / "s1" / "dup-mako-s1", "fresh\n")

    assert excinfo.value.step == "write"
    assert excinfo.value.path == root / "s1.tmp" / "dup-mako-s1"
    assert not (root / "s1" / "dup-mako-s1").exists()
    assert (root / "s1.tmp" / "dup-mako-s1").read_text(encoding="utf-8") == "stale"


def test_rename_failure_is_reported(tmp_path: Path) -> None:
    root = tmp_path / "spool"
    writer = SpoolWriter(root)
    writer.ensure_root()
    # A plain file where the node directory should be.
    (root / "s1").write_text("", encoding="utf-8")

    with pytest.raises(SpoolWriteError) as excinfo:
        writer.write(root / "s1" / "name-mako-s1", "data\n")

    assert excinfo.value.step == "rename"
    assert list((root / "s1.tmp").iterdir()) == []


def test_failed_write_removes_its_scratch_file(tmp_path: Path, monkeypatch) -> None:
    root = tmp_path / "spool"
    writer = SpoolWriter(root)
    writer.ensure_root()

    def _fsync_fails(fd: int) -> None:
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(spool.os, "fsync", _fsync_fails)
    with pytest.raises(SpoolWriteError) as excinfo:
        writer.write(root / "s1" / "name-mako-s1", "data\n")

    assert excinfo.value.step == "write"
    assert list((root / "s1.tmp").iterdir()) == []
    assert list((root / "s1").iterdir()) == []


def test_mkdir_failure_other_than_exists_aborts(tmp_path: Path) -> None:
    writer = SpoolWriter(tmp_path / "spool")
    # Parent of the node directory was never provisioned.
    with pytest.raises(SpoolWriteError) as excinfo:
        writer.write(tmp_path / "spool" / "s1" / "name-mako-s1", "data\n")
    assert excinfo.value.step == "mkdir"


def test_ensure_root_is_fatal_when_root_is_a_file(tmp_path: Path) -> None:
    root = tmp_path / "spool"
    root.write_text("", encoding="utf-8")
    with pytest.raises(SpoolConfigurationError):
        SpoolWriter(root).ensure_root()
