"""
Integrity Manifest
~~~~~~~~~~~~~~~~~~

``manifest.txt`` codec shared by snapshots and backup archives.
One line per file: ``relative/path<TAB>size<TAB>sha256``.
"""

from __future__ import annotations

import hashlib
import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

__all__ = [
    "MANIFEST_NAME",
    "ManifestEntry",
    "Manifest",
    "sha256_file",
    "sha256_stream",
    "build_manifest",
    "verify_tree",
]

MANIFEST_NAME = "manifest.txt"

_CHUNK = 1024 * 1024


def sha256_stream(stream: BinaryIO) -> tuple[int, str]:
    """Return ``(size, hexdigest)`` of everything readable from ``stream``."""
    digest = hashlib.sha256()
    size = 0
    while True:
        chunk = stream.read(_CHUNK)
        if not chunk:
            break
        size += len(chunk)
        digest.update(chunk)
    return size, digest.hexdigest()


def sha256_file(path: str | Path) -> tuple[int, str]:
    """Return ``(size, hexdigest)`` of a file on disk."""
    with open(path, "rb") as f:
        return sha256_stream(f)


@dataclass(frozen=True)
class ManifestEntry:
    """One file listed in a manifest."""

    path: str
    size: int
    checksum: str

    def to_line(self) -> str:
        return f"{self.path}\t{self.size}\t{self.checksum}"

    @classmethod
    def from_line(cls, line: str) -> ManifestEntry:
        parts = line.split("\t")
        if len(parts) != 3:
            raise ValueError(f"Malformed manifest line: {line!r}")
        path, size, checksum = parts
        return cls(path=path, size=int(size), checksum=checksum)


class Manifest:
    """
    Ordered collection of manifest entries keyed by relative path.

    Paths always use forward slashes and are relative to the tree root.
    """

    def __init__(self, entries: Iterable[ManifestEntry] = ()) -> None:
        self._entries: dict[str, ManifestEntry] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: ManifestEntry) -> None:
        self._entries[entry.path] = entry

    def get(self, path: str) -> ManifestEntry | None:
        return self._entries.get(path)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(sorted(self._entries.values(), key=lambda e: e.path))

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def total_size(self) -> int:
        return sum(e.size for e in self._entries.values())

    def dumps(self) -> str:
        return "".join(entry.to_line() + "\n" for entry in self)

    @classmethod
    def loads(cls, text: str) -> Manifest:
        return cls(
            ManifestEntry.from_line(line)
            for line in text.splitlines()
            if line.strip() and not line.startswith("#")
        )

    def write(self, path: str | Path) -> None:
        Path(path).write_text(self.dumps(), encoding="utf-8")

    @classmethod
    def read(cls, path: str | Path) -> Manifest:
        return cls.loads(Path(path).read_text(encoding="utf-8"))


def _iter_files(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            yield Path(dirpath) / name


def build_manifest(root: str | Path, exclude: Iterable[str] = ()) -> Manifest:
    """
    Hash every regular file under ``root``.

    Args:
        root: Tree to walk.
        exclude: Relative paths to leave out (e.g. the manifest itself).
    """
    root = Path(root)
    skipped = set(exclude)
    manifest = Manifest()
    for file_path in _iter_files(root):
        if file_path.is_symlink() or not file_path.is_file():
            continue
        rel = file_path.relative_to(root).as_posix()
        if rel in skipped:
            continue
        size, checksum = sha256_file(file_path)
        manifest.add(ManifestEntry(path=rel, size=size, checksum=checksum))
    return manifest


def verify_tree(root: str | Path, manifest: Manifest) -> list[str]:
    """
    Check every manifest entry against the files under ``root``.

    Returns:
        Human-readable reasons for each mismatch; empty when the tree matches.
    """
    root = Path(root)
    reasons: list[str] = []
    for entry in manifest:
        target = root / entry.path
        if not target.is_file():
            reasons.append(f"missing file: {entry.path}")
            continue
        size, checksum = sha256_file(target)
        if size != entry.size:
            reasons.append(f"size mismatch: {entry.path} ({size} != {entry.size})")
        elif checksum != entry.checksum:
            reasons.append(f"checksum mismatch: {entry.path}")
    return reasons
