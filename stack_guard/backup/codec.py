"""
Archive Codecs
~~~~~~~~~~~~~~

Compression formats for backup archives. The engine only depends on
:class:`ArchiveCodec`; :class:`TarGzCodec` is the ``.tar.gz`` format.
"""

from __future__ import annotations

import logging
import os
import tarfile
import zlib
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path, PurePosixPath

from stack_guard.core.manifest import sha256_stream
from stack_guard.exceptions import ArchiveCorruptError

__all__ = ["ArchiveCodec", "TarGzCodec", "is_safe_member"]

logger = logging.getLogger(__name__)

_READ_ERRORS = (tarfile.TarError, EOFError, zlib.error, OSError)


def is_safe_member(name: str) -> bool:
    """Reject absolute names and names that climb out of the archive root."""
    path = PurePosixPath(name)
    return bool(name) and not path.is_absolute() and ".." not in path.parts


class ArchiveCodec(ABC):
    """Reads and writes one archive format."""

    suffix: str = ""

    @abstractmethod
    def write(self, source_dir: Path, target: Path) -> None:
        """Pack ``source_dir`` (as the archive's single top directory) into ``target``."""

    @abstractmethod
    def extract(self, archive: Path, target_dir: Path) -> None:
        """Unpack every member of ``archive`` under ``target_dir``."""

    @abstractmethod
    def members(self, archive: Path) -> list[str]:
        """Names of every member, in archive order."""

    @abstractmethod
    def read(self, archive: Path, member: str) -> bytes:
        """Content of one regular-file member."""

    @abstractmethod
    def checksums(self, archive: Path) -> dict[str, tuple[int, str]]:
        """``{name: (size, sha256)}`` of every regular file, read in one pass."""


class TarGzCodec(ArchiveCodec):
    """gzip-compressed tar archives, via :mod:`tarfile`."""

    suffix = ".tar.gz"

    def __init__(self, compresslevel: int = 6) -> None:
        self._compresslevel = compresslevel

    @contextmanager
    def _open(self, archive: Path) -> Iterator[tarfile.TarFile]:
        try:
            with tarfile.open(archive, "r:gz") as tar:
                yield tar
        except _READ_ERRORS as exc:
            raise ArchiveCorruptError(
                f"Cannot read archive {archive}: {exc}", reasons=[f"unreadable: {exc}"]
            ) from exc

    def write(self, source_dir: Path, target: Path) -> None:
        with tarfile.open(target, "w:gz", compresslevel=self._compresslevel) as tar:
            tar.add(source_dir, arcname=source_dir.name)
        with open(target, "rb") as f:
            os.fsync(f.fileno())

    def extract(self, archive: Path, target_dir: Path) -> None:
        with self._open(archive) as tar:
            unsafe = [m.name for m in tar.getmembers() if not is_safe_member(m.name)]
            if unsafe:
                raise ArchiveCorruptError(
                    f"Archive {archive.name} has unsafe member names",
                    reasons=[f"unsafe member: {name}" for name in unsafe],
                )
            tar.extractall(target_dir, filter="data")

    def members(self, archive: Path) -> list[str]:
        with self._open(archive) as tar:
            return tar.getnames()

    def read(self, archive: Path, member: str) -> bytes:
        with self._open(archive) as tar:
            try:
                stream = tar.extractfile(member)
            except KeyError as exc:
                raise ArchiveCorruptError(
                    f"{archive.name} has no member {member}",
                    reasons=[f"missing member: {member}"],
                ) from exc
            if stream is None:
                raise ArchiveCorruptError(
                    f"{archive.name}: {member} is not a regular file",
                    reasons=[f"not a file: {member}"],
                )
            return stream.read()

    def checksums(self, archive: Path) -> dict[str, tuple[int, str]]:
        sums: dict[str, tuple[int, str]] = {}
        with self._open(archive) as tar:
            for member in tar:
                if not member.isfile():
                    continue
                stream = tar.extractfile(member)
                if stream is not None:
                    sums[member.name] = sha256_stream(stream)
        return sums
