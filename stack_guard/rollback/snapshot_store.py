"""
Snapshot Store
~~~~~~~~~~~~~~

Point-in-time copies of filesystem paths used as the safety net of one
safe operation. Each snapshot is a directory::

    <root>/<snapshot_id>/
        metadata.env        key=value record (see core.records)
        manifest.txt        path<TAB>size<TAB>sha256 per stored file
        system_info.txt     optional
        files/<n>/<name>    copy of the n-th captured path

Snapshots are staged in ``<root>/.<snapshot_id>.partial`` and renamed into
place, so a listed snapshot is always complete.
"""

from __future__ import annotations

import filecmp
import getpass
import logging
import os
import platform
import secrets
import shutil
import socket
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path

from stack_guard.core.manifest import MANIFEST_NAME, Manifest, build_manifest, verify_tree
from stack_guard.core.models import Snapshot, SnapshotSummary
from stack_guard.exceptions import (
    RestoreConflictError,
    SnapshotCorruptError,
    SnapshotCreationError,
    SnapshotNotFoundError,
)

__all__ = ["SnapshotStore"]

logger = logging.getLogger(__name__)

METADATA_NAME = "metadata.env"
SYSTEM_INFO_NAME = "system_info.txt"
FILES_DIR = "files"
_PARTIAL_SUFFIX = ".partial"


def _system_info() -> dict[str, str]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return {
        "user": user,
        "host": socket.gethostname(),
        "cwd": os.getcwd(),
        "pid": str(os.getpid()),
        "python": platform.python_version(),
        "platform": platform.platform(),
    }


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class SnapshotStore:
    """
    Directory-backed store of operation snapshots.

    Args:
        root: Directory holding one sub-directory per snapshot.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        root: str | Path,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._root = Path(root)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, snapshot_id: str) -> Path:
        """Return the directory a snapshot lives in (it may not exist)."""
        if not snapshot_id or "/" in snapshot_id or snapshot_id.startswith("."):
            raise SnapshotNotFoundError(f"Invalid snapshot id: {snapshot_id!r}")
        return self._root / snapshot_id

    # ── Create ───────────────────────────────────────────────────────────

    def create(
        self,
        operation_name: str,
        paths: Iterable[str | Path],
        include_system_info: bool = False,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        """
        Copy every existing path into a new snapshot.

        Paths that do not exist are recorded as absent rather than failing,
        so a forced restore can remove them again.

        Args:
            operation_name: The operation this snapshot protects.
            paths: Files or directories to capture.
            include_system_info: Also record user/host/process details.
            metadata: Extra string metadata stored with the snapshot.

        Returns:
            The new snapshot ID.

        Raises:
            SnapshotCreationError: On any I/O failure; no partial snapshot
                is left behind.
        """
        with self._lock:
            created_at = self._next_timestamp()
            snapshot_id = (
                f"snap_{created_at.strftime('%Y%m%dT%H%M%S_%f')}_{secrets.token_hex(3)}"
            )
            staging = self._root / f".{snapshot_id}{_PARTIAL_SUFFIX}"
            try:
                snapshot = self._stage(
                    staging,
                    snapshot_id,
                    operation_name,
                    created_at,
                    [Path(p).absolute() for p in paths],
                    include_system_info,
                    dict(metadata or {}),
                )
                os.replace(staging, self._root / snapshot_id)
            except OSError as exc:
                shutil.rmtree(staging, ignore_errors=True)
                raise SnapshotCreationError(
                    f"Could not create snapshot for {operation_name!r}: {exc}",
                    details={"operation": operation_name},
                ) from exc

        logger.info(
            "Snapshot %s created for %s (%d paths, %d absent)",
            snapshot_id,
            operation_name,
            len(snapshot.captured_paths),
            len(snapshot.absent_paths),
        )
        return snapshot_id

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        newest = max((s.created_at for s in self._load_all()), default=None)
        if newest is not None and now <= newest:
            now = newest + timedelta(microseconds=1)
        return now

    def _stage(
        self,
        staging: Path,
        snapshot_id: str,
        operation_name: str,
        created_at: datetime,
        paths: list[Path],
        include_system_info: bool,
        metadata: dict[str, str],
    ) -> Snapshot:
        files_dir = staging / FILES_DIR
        files_dir.mkdir(parents=True)

        captured: list[str] = []
        absent: list[str] = []
        for source in paths:
            if not source.exists():
                logger.debug("Snapshot %s: %s does not exist", snapshot_id, source)
                absent.append(str(source))
                continue
            slot = files_dir / str(len(captured))
            slot.mkdir()
            if source.is_dir():
                shutil.copytree(source, slot / source.name, symlinks=True)
            else:
                shutil.copy2(source, slot / source.name)
            captured.append(str(source))

        if include_system_info:
            info = _system_info()
            (staging / SYSTEM_INFO_NAME).write_text(
                "".join(f"{k}={v}\n" for k, v in info.items()), encoding="utf-8"
            )
            metadata.update(info)

        manifest = build_manifest(staging)
        manifest.write(staging / MANIFEST_NAME)
        snapshot = Snapshot(
            id=snapshot_id,
            operation_name=operation_name,
            created_at=created_at,
            captured_paths=tuple(captured),
            absent_paths=tuple(absent),
            metadata=metadata,
            manifest=manifest,
        )
        (staging / METADATA_NAME).write_text(snapshot.to_record(), encoding="utf-8")
        return snapshot

    # ── Read ─────────────────────────────────────────────────────────────

    def get(self, snapshot_id: str) -> Snapshot:
        """
        Load a snapshot's metadata and manifest.

        Raises:
            SnapshotNotFoundError: If no such snapshot exists.
            SnapshotCorruptError: If its metadata cannot be parsed.
        """
        directory = self.path_for(snapshot_id)
        record = directory / METADATA_NAME
        if not record.is_file():
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
        try:
            manifest_path = directory / MANIFEST_NAME
            manifest = Manifest.read(manifest_path) if manifest_path.exists() else Manifest()
            return Snapshot.from_record(record.read_text(encoding="utf-8"), manifest)
        except (KeyError, ValueError) as exc:
            raise SnapshotCorruptError(
                f"Snapshot {snapshot_id} has unreadable metadata: {exc}"
            ) from exc

    def _load_all(self) -> list[Snapshot]:
        if not self._root.is_dir():
            return []
        snapshots: list[Snapshot] = []
        for entry in self._root.iterdir():
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            try:
                snapshots.append(self.get(entry.name))
            except SnapshotNotFoundError:
                continue
            except SnapshotCorruptError as exc:
                logger.warning("Skipping unreadable snapshot %s: %s", entry.name, exc)
        snapshots.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return snapshots

    def list(self) -> list[SnapshotSummary]:
        """Return summaries of all published snapshots, newest first."""
        return [s.summary(self._root / s.id) for s in self._load_all()]

    # ── Restore ──────────────────────────────────────────────────────────

    def restore(
        self,
        snapshot_id: str,
        target_override: str | Path | None = None,
        force: bool = False,
        strict: bool = False,
    ) -> bool:
        """
        Copy a snapshot's content back to where it was captured from.

        Args:
            snapshot_id: Snapshot to restore.
            target_override: Restore under this directory instead, keeping
                each path's position relative to the captured paths'
                common parent.
            force: Overwrite differing targets. A forced directory restore
                replaces the tree wholesale and paths that were absent at
                capture time are removed.
            strict: Raise instead of returning False when targets were
                skipped.

        Returns:
            True if every path was restored, False if conflicting targets
            were skipped.

        Raises:
            SnapshotNotFoundError: Unknown snapshot ID.
            SnapshotCorruptError: Stored content no longer matches the manifest.
            RestoreConflictError: With ``strict``, when targets were skipped.
        """
        snapshot = self.get(snapshot_id)
        directory = self.path_for(snapshot_id)
        problems = verify_tree(directory, snapshot.manifest)
        if problems:
            raise SnapshotCorruptError(
                f"Snapshot {snapshot_id} failed verification: {'; '.join(problems)}"
            )

        targets = self._targets(snapshot, target_override)
        conflicts: list[str] = []
        for index, original in enumerate(snapshot.captured_paths):
            source = directory / FILES_DIR / str(index) / Path(original).name
            target = targets[original]
            if force:
                self._force_copy(source, target)
            else:
                conflicts.extend(self._merge_copy(source, target))

        for original in snapshot.absent_paths:
            target = targets[original]
            if not (target.exists() or target.is_symlink()):
                continue
            if force:
                logger.debug("Removing %s (absent when snapshot was taken)", target)
                _remove(target)
            else:
                conflicts.append(str(target))

        if conflicts:
            for path in conflicts:
                logger.warning("Restore of %s skipped %s: target differs", snapshot_id, path)
            if strict:
                raise RestoreConflictError(
                    f"Snapshot {snapshot_id}: {len(conflicts)} target(s) differ; "
                    "use force to overwrite",
                    conflicts=conflicts,
                )
            return False

        logger.info("Snapshot %s restored%s", snapshot_id, " (forced)" if force else "")
        return True

    @staticmethod
    def _targets(snapshot: Snapshot, override: str | Path | None) -> dict[str, Path]:
        originals = [*snapshot.captured_paths, *snapshot.absent_paths]
        if override is None or not originals:
            return {p: Path(p) for p in originals}
        base = os.path.commonpath([os.path.dirname(p) for p in originals])
        return {p: Path(override) / os.path.relpath(p, base) for p in originals}

    @staticmethod
    def _force_copy(source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            if target.exists() or target.is_symlink():
                _remove(target)
            shutil.copytree(source, target, symlinks=True)
        else:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            shutil.copy2(source, target)

    @staticmethod
    def _merge_copy(source: Path, target: Path) -> list[str]:
        """Copy files that are missing or identical; report differing ones."""
        if source.is_file():
            pairs = [(source, target)]
        else:
            pairs = [
                (Path(dirpath) / name, target / Path(dirpath).relative_to(source) / name)
                for dirpath, _, names in os.walk(source)
                for name in names
            ]
        conflicts: list[str] = []
        for src, dst in pairs:
            if dst.is_file() and filecmp.cmp(src, dst, shallow=False):
                continue
            if dst.exists() or dst.is_symlink():
                conflicts.append(str(dst))
                continue
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
        return conflicts

    # ── Maintenance ──────────────────────────────────────────────────────

    def prune(self, max_keep: int) -> list[str]:
        """
        Delete the oldest snapshots beyond ``max_keep``, oldest first.

        ``max_keep`` below 1 is treated as 1 so the newest snapshot always
        survives.

        Returns:
            IDs of the deleted snapshots, in deletion order.
        """
        keep = max(1, max_keep)
        with self._lock:
            doomed = [s.id for s in reversed(self._load_all()[keep:])]
            for snapshot_id in doomed:
                shutil.rmtree(self._root / snapshot_id)
                logger.debug("Pruned snapshot %s", snapshot_id)
        if doomed:
            logger.info("Pruned %d snapshot(s), keeping %d", len(doomed), keep)
        return doomed

    def discard_partials(self) -> int:
        """Remove staging directories left by an interrupted ``create``."""
        if not self._root.is_dir():
            return 0
        removed = 0
        for entry in self._root.iterdir():
            if entry.name.startswith(".") and entry.name.endswith(_PARTIAL_SUFFIX):
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        if removed:
            logger.warning("Discarded %d partial snapshot(s)", removed)
        return removed
