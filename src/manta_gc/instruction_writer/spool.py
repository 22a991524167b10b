"""Durable spool writer (create in <dir>.tmp, then rename into place)."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path

from .contracts import InstructionWriterError


logger = logging.getLogger("manta_gc.instruction_writer.spool")

TMP_DIR_SUFFIX = ".tmp"


class SpoolConfigurationError(InstructionWriterError):
    """Raised when the spool root cannot be provisioned."""


class SpoolWriteError(InstructionWriterError):
    """Raised when any step of a spool write fails; the batch is aborted."""

    def __init__(self, *, path: Path, step: str, cause: BaseException) -> None:
        super().__init__(f"spool {step} failed for {path}: {cause}")
        self.path = path
        self.step = step
        self.cause = cause


@dataclass(frozen=True)
class SpoolRef:
    path: str
    bytes_written: int


class SpoolWriter:
    """Writes instruction files so readers never observe a partial file.

    Each file is created with exclusive-create semantics inside the sibling
    ``<dir>.tmp`` directory and then renamed into ``<dir>``. Clients that
    rsync the spool directory only ever see complete files.
    """

    def __init__(self, root: Path | str, *, fsync: bool = True) -> None:
        self.root = Path(root)
        self.fsync = fsync

    def ensure_root(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SpoolConfigurationError(f"unable to mkdir {self.root}: {exc}") from exc
        if not self.root.is_dir():
            raise SpoolConfigurationError(f"spool root is not a directory: {self.root}")
        return self.root

    def write(self, path: Path | str, data: str) -> SpoolRef:
        target = Path(path)
        directory = target.parent
        tmp_dir = directory.with_name(directory.name + TMP_DIR_SUFFIX)
        tmp_path = tmp_dir / target.name

        # The root was provisioned at startup; only the node dir and its
        # scratch sibling are created here.
        self._mkdir(directory, step="mkdir")
        self._mkdir(tmp_dir, step="mkdir_tmp")

        payload = data.encode("utf-8")
        try:
            handle = tmp_path.open("xb")
        except OSError as exc:
            # An existing scratch file belongs to another writer; leave it.
            raise SpoolWriteError(path=tmp_path, step="write", cause=exc) from exc
        try:
            with handle:
                handle.write(payload)
                handle.flush()
                if self.fsync:
                    os.fsync(handle.fileno())
        except OSError as exc:
            self._discard(tmp_path)
            raise SpoolWriteError(path=tmp_path, step="write", cause=exc) from exc
        logger.debug("spool write path=%s bytes=%s", tmp_path, len(payload))

        try:
            os.rename(tmp_path, target)
        except OSError as exc:
            self._discard(tmp_path)
            raise SpoolWriteError(path=target, step="rename", cause=exc) from exc
        logger.debug("spool rename src=%s dest=%s", tmp_path, target)
        return SpoolRef(path=str(target), bytes_written=len(payload))

    def _discard(self, tmp_path: Path) -> None:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("unable to remove scratch file path=%s error=%s", tmp_path, exc)

    def _mkdir(self, directory: Path, *, step: str) -> None:
        try:
            directory.mkdir()
        except FileExistsError:
            logger.debug("mkdir: dir already exists dir=%s", directory)
            return
        except OSError as exc:
            raise SpoolWriteError(path=directory, step=step, cause=exc) from exc
        logger.debug("mkdir dir=%s", directory)
