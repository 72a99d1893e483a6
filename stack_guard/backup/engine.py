"""
Backup/Restore Engine
~~~~~~~~~~~~~~~~~~~~~

Durable, user-facing archives of the project's configuration, TLS
material and data. An archive is a ``.tar.gz`` holding one top directory::

    <name>/
        manifest.txt    path<TAB>size<TAB>sha256 for every captured file
        backup.env      archive metadata (key=value record)
        <captured files under their paths relative to the project root>
        _runtime/       volumes and database dump (data and full archives)

Archives are staged and compressed to a hidden temp file, validated, and
only then renamed onto their final name, so a failed backup never leaves
anything at the final path.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from stack_guard.backup.codec import ArchiveCodec, TarGzCodec, is_safe_member
from stack_guard.backup.runtime import RuntimeData, is_runtime_path
from stack_guard.core.executor import SafeOperationExecutor
from stack_guard.core.manifest import (
    MANIFEST_NAME,
    Manifest,
    build_manifest,
    sha256_file,
    verify_tree,
)
from stack_guard.core.models import ArchiveSummary, BackupArchive
from stack_guard.core.states import BackupType
from stack_guard.exceptions import (
    ArchiveCorruptError,
    ArchiveError,
    ArchiveNotFoundError,
    ArchiveWriteError,
    BackendError,
)

__all__ = ["BackupEngine", "METADATA_NAME", "HISTORY_FIELDS"]

logger = logging.getLogger(__name__)

METADATA_NAME = "backup.env"
HISTORY_FIELDS = ("timestamp", "type", "file", "size", "duration", "status")
_RESERVED = frozenset({MANIFEST_NAME, METADATA_NAME})
_RUNTIME_TYPES = (BackupType.FULL, BackupType.DATA)


class BackupEngine:
    """
    Creates, validates, lists and restores backup archives.

    Args:
        base_dir: Project root; archive paths are relative to it.
        backup_dir: Default directory archives are written to.
        type_paths: Project-relative paths captured by the ``config``,
            ``ssl`` and ``data`` types. ``full`` is their union.
        executor: Wraps restores in a safe operation when given.
        runtime: Captures volumes and the database dump into ``data`` and
            ``full`` archives and restores them; project files only if None.
        codec: Archive format.
        retention: Archives kept by :meth:`prune` by default.
        history_log: File name of the history log inside ``backup_dir``.
        exclude: Absolute directories never captured (state, backups).
        tool_version: Recorded in each archive's metadata.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        base_dir: str | Path,
        backup_dir: str | Path,
        type_paths: Mapping[BackupType | str, Iterable[str]],
        executor: SafeOperationExecutor | None = None,
        runtime: RuntimeData | None = None,
        codec: ArchiveCodec | None = None,
        retention: int = 10,
        history_log: str = "backup_history.log",
        exclude: Iterable[str | Path] = (),
        tool_version: str = "",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._base_dir = Path(base_dir).absolute()
        self._backup_dir = Path(backup_dir).absolute()
        self._executor = executor
        self._runtime = runtime
        self._codec = codec or TarGzCodec()
        self._retention = retention
        self._history_name = history_log
        self._exclude = [Path(p).absolute() for p in (self._backup_dir, *exclude)]
        self._tool_version = tool_version
        self._clock = clock or (lambda: datetime.now(UTC))

        self._type_paths: dict[BackupType, list[str]] = {
            BackupType(k): list(v) for k, v in type_paths.items()
        }
        full: list[str] = []
        for scope in (BackupType.CONFIG, BackupType.SSL, BackupType.DATA):
            for rel in self._type_paths.get(scope, []):
                if rel not in full:
                    full.append(rel)
        self._type_paths[BackupType.FULL] = full

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    @property
    def history_path(self) -> Path:
        return self._backup_dir / self._history_name

    def scope_paths(self, scope: BackupType | str) -> list[str]:
        """Project-relative paths captured for ``scope``."""
        scope = BackupType(scope)
        if scope == BackupType.INCREMENTAL:
            scope = BackupType.FULL
        return list(self._type_paths.get(scope, []))

    # ── Collect ──────────────────────────────────────────────────────────

    def _excluded(self, path: Path) -> bool:
        return any(path == ex or ex in path.parents for ex in self._exclude)

    def _collect(self, scope: BackupType) -> list[str]:
        """Relative posix paths of every regular file in ``scope``."""
        files: list[str] = []
        for rel in self.scope_paths(scope):
            source = self._base_dir / rel
            if self._excluded(source):
                continue
            if source.is_file() and not source.is_symlink():
                candidates = [source]
            elif source.is_dir():
                candidates = [
                    Path(dirpath) / name
                    for dirpath, dirnames, names in sorted(os.walk(source))
                    for name in sorted(names)
                ]
            else:
                logger.debug("Backup path %s does not exist, skipping", source)
                continue
            for path in candidates:
                if path.is_symlink() or not path.is_file() or self._excluded(path):
                    continue
                relative = path.relative_to(self._base_dir).as_posix()
                if relative not in files:
                    files.append(relative)
        return files

    # ── Create ───────────────────────────────────────────────────────────

    def unique_name(self, prefix: str, directory: str | Path | None = None) -> str:
        """
        Timestamped archive name starting with ``prefix`` that is not taken
        in ``directory`` (the backup dir if None). A second archive within
        the same second gets a ``_1``, ``_2``, ... suffix.
        """
        directory = Path(directory) if directory else self._backup_dir
        stamp = self._clock().strftime("%Y%m%d_%H%M%S")
        name = f"{prefix}{stamp}"
        candidate, n = name, 1
        while (directory / f"{candidate}{self._codec.suffix}").exists():
            candidate = f"{name}_{n}"
            n += 1
        return candidate

    def _default_name(self, kind: str, directory: Path) -> str:
        return self.unique_name(f"stack_backup_{kind}_", directory)

    def create(
        self,
        type: BackupType | str,
        destination_dir: str | Path | None = None,
        name: str | None = None,
    ) -> Path:
        """
        Create and atomically publish an archive.

        Args:
            type: ``full``, ``config``, ``data`` or ``ssl``. ``incremental``
                delegates to :meth:`create_incremental`.
            destination_dir: Target directory; the configured backup dir if None.
            name: Archive name without suffix; generated if None.

        Returns:
            Path of the published archive.

        Raises:
            ArchiveWriteError: If staging, compression, validation or
                publishing failed. Nothing is left at the final path.
        """
        backup_type = BackupType(type)
        if backup_type == BackupType.INCREMENTAL:
            return self.create_incremental(destination_dir=destination_dir, name=name)
        directory = Path(destination_dir) if destination_dir else self._backup_dir
        directory.mkdir(parents=True, exist_ok=True)
        name = name or self._default_name(backup_type.value, directory)
        logger.info("Creating %s backup %s", backup_type.value, name)
        return self._build(backup_type, self._collect(backup_type), directory, name)

    def create_incremental(
        self,
        base_archive: str | Path | None = None,
        destination_dir: str | Path | None = None,
        name: str | None = None,
    ) -> Path:
        """
        Archive only files that changed since a full base archive.

        A file is included when it is missing from the base manifest or its
        size or sha256 differs. Without a valid full base this falls back
        to a full backup.

        Args:
            base_archive: Base to diff against; the newest valid full
                archive in the destination if None.
            destination_dir: Target directory; the configured backup dir if None.
            name: Archive name without suffix; generated if None.
        """
        directory = Path(destination_dir) if destination_dir else self._backup_dir
        directory.mkdir(parents=True, exist_ok=True)

        base = Path(base_archive) if base_archive else self.latest_valid(
            BackupType.FULL, directory, exact=True
        )
        base_meta = self._usable_base(base)
        if base is None or base_meta is None:
            logger.warning("No valid full base archive; creating a full backup instead")
            return self.create(BackupType.FULL, directory, name)

        changed: list[str] = []
        for rel in self._collect(BackupType.FULL):
            entry = base_meta.manifest.get(rel)
            if entry is None:
                changed.append(rel)
                continue
            size, checksum = sha256_file(self._base_dir / rel)
            if size != entry.size or checksum != entry.checksum:
                changed.append(rel)

        name = name or self._default_name(BackupType.INCREMENTAL.value, directory)
        logger.info(
            "Creating incremental backup %s over %s (%d changed file(s))",
            name,
            base.name,
            len(changed),
        )
        return self._build(BackupType.INCREMENTAL, changed, directory, name, base_ref=base.name)

    def _usable_base(self, base: Path | None) -> BackupArchive | None:
        if base is None:
            return None
        valid, reasons = self.validate(base)
        if not valid:
            logger.warning("Base archive %s is not valid: %s", base, "; ".join(reasons))
            return None
        meta = self.read_metadata(base)
        if meta.type != BackupType.FULL:
            logger.warning("Base archive %s is %s, not full", base.name, meta.type.value)
            return None
        return meta

    def _build(
        self,
        backup_type: BackupType,
        files: list[str],
        directory: Path,
        name: str,
        base_ref: str | None = None,
    ) -> Path:
        final = directory / f"{name}{self._codec.suffix}"
        tmp = directory / f".{name}{self._codec.suffix}.tmp"
        start = time.perf_counter()
        try:
            if final.exists():
                raise ArchiveWriteError(f"Archive already exists: {final}")
            clashes = sorted(set(files) & _RESERVED) + [f for f in files if is_runtime_path(f)]
            if clashes:
                raise ArchiveWriteError(f"Reserved archive names captured: {clashes}")

            with tempfile.TemporaryDirectory(prefix=".stage-", dir=directory) as staging:
                root = Path(staging) / name
                root.mkdir()
                for rel in files:
                    target = root / rel
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(self._base_dir / rel, target)
                if self._runtime is not None and backup_type in _RUNTIME_TYPES:
                    files = [*files, *self._runtime.export(root)]
                manifest = build_manifest(root)
                manifest.write(root / MANIFEST_NAME)
                archive = BackupArchive(
                    id=name,
                    type=backup_type,
                    created_at=self._clock(),
                    base_archive_ref=base_ref,
                    manifest=manifest,
                    scope_paths=tuple(self.scope_paths(backup_type)),
                    tool_version=self._tool_version,
                )
                (root / METADATA_NAME).write_text(archive.to_record(), encoding="utf-8")
                self._codec.write(root, tmp)

            valid, reasons = self.validate(tmp)
            if not valid:
                raise ArchiveWriteError(
                    f"Freshly written archive failed validation: {'; '.join(reasons)}"
                )
            os.replace(tmp, final)
        except (OSError, ArchiveError, BackendError) as exc:
            tmp.unlink(missing_ok=True)
            self._record_history(backup_type, final, 0, start, "failed")
            logger.error("Backup %s failed: %s", name, exc)
            if isinstance(exc, ArchiveWriteError):
                raise
            raise ArchiveWriteError(f"Could not write archive {final}: {exc}") from exc

        size = final.stat().st_size
        self._record_history(backup_type, final, size, start, "success")
        logger.info("Backup published: %s (%d files, %d bytes)", final, len(files), size)
        return final

    # ── History ──────────────────────────────────────────────────────────

    def _record_history(
        self, backup_type: BackupType, archive: Path, size: int, start: float, status: str
    ) -> None:
        duration = int(time.perf_counter() - start)
        line = "|".join(
            [
                datetime.now(UTC).isoformat(timespec="seconds"),
                backup_type.value,
                archive.name,
                str(size),
                str(duration),
                status,
            ]
        )
        try:
            self._backup_dir.mkdir(parents=True, exist_ok=True)
            with open(self.history_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning("Could not append to backup history: %s", exc)

    def history(self) -> list[dict[str, str]]:
        """Parsed history log lines, oldest first."""
        if not self.history_path.exists():
            return []
        rows = []
        for line in self.history_path.read_text(encoding="utf-8").splitlines():
            parts = line.split("|")
            if len(parts) == len(HISTORY_FIELDS):
                rows.append(dict(zip(HISTORY_FIELDS, parts, strict=True)))
        return rows

    # ── Validate ─────────────────────────────────────────────────────────

    def validate(self, archive_path: str | Path) -> tuple[bool, list[str]]:
        """
        Check an archive end to end without extracting it.

        Checks that it is readable and decompressible, that every member
        name is safe and under one top directory, that the manifest and
        metadata are present, and that every manifest entry's size and
        sha256 match the member data.

        Returns:
            ``(valid, reasons)``; reasons is empty when valid.
        """
        path = Path(archive_path)
        if not path.is_file():
            return False, [f"not found: {path}"]
        try:
            names = self._codec.members(path)
        except ArchiveCorruptError as exc:
            return False, exc.reasons or [str(exc)]
        if not names:
            return False, ["archive is empty"]

        reasons = [f"unsafe member: {n}" for n in names if not is_safe_member(n)]
        if reasons:
            return False, reasons
        tops = sorted({PurePosixPath(n).parts[0] for n in names})
        if len(tops) != 1:
            return False, [f"expected one top directory, found {len(tops)}"]
        top = tops[0]

        for reserved in (MANIFEST_NAME, METADATA_NAME):
            if f"{top}/{reserved}" not in names:
                reasons.append(f"{reserved} missing")
        if reasons:
            return False, reasons

        try:
            manifest = Manifest.loads(
                self._codec.read(path, f"{top}/{MANIFEST_NAME}").decode("utf-8")
            )
            BackupArchive.from_record(
                self._codec.read(path, f"{top}/{METADATA_NAME}").decode("utf-8")
            )
            seen = {
                member[len(top) + 1 :]: digest
                for member, digest in self._codec.checksums(path).items()
                if member[len(top) + 1 :] not in _RESERVED
            }
        except ArchiveCorruptError as exc:
            return False, exc.reasons or [str(exc)]
        except (KeyError, ValueError) as exc:
            return False, [f"unreadable metadata: {exc}"]

        for entry in manifest:
            actual = seen.pop(entry.path, None)
            if actual is None:
                reasons.append(f"missing file: {entry.path}")
            elif actual[0] != entry.size:
                reasons.append(f"size mismatch: {entry.path} ({actual[0]} != {entry.size})")
            elif actual[1] != entry.checksum:
                reasons.append(f"checksum mismatch: {entry.path}")
        reasons.extend(f"unlisted file: {rel}" for rel in sorted(seen))
        return not reasons, reasons

    def read_metadata(self, archive_path: str | Path) -> BackupArchive:
        """
        Read an archive's ``backup.env`` and manifest.

        Raises:
            ArchiveNotFoundError: If the file does not exist.
            ArchiveCorruptError: If the metadata cannot be read.
        """
        path = Path(archive_path)
        if not path.is_file():
            raise ArchiveNotFoundError(f"Archive not found: {path}")
        names = self._codec.members(path)
        tops = {PurePosixPath(n).parts[0] for n in names if n}
        if len(tops) != 1:
            raise ArchiveCorruptError(f"{path.name}: expected one top directory")
        top = tops.pop()
        try:
            manifest = Manifest.loads(
                self._codec.read(path, f"{top}/{MANIFEST_NAME}").decode("utf-8")
            )
            return BackupArchive.from_record(
                self._codec.read(path, f"{top}/{METADATA_NAME}").decode("utf-8"),
                manifest=manifest,
                compressed_path=path,
                size=path.stat().st_size,
            )
        except (KeyError, ValueError) as exc:
            raise ArchiveCorruptError(
                f"{path.name}: unreadable metadata: {exc}", reasons=[str(exc)]
            ) from exc

    # ── List / prune / delete ────────────────────────────────────────────

    def list(self, directory: str | Path | None = None) -> list[ArchiveSummary]:
        """Summaries of every archive in ``directory``, newest first."""
        directory = Path(directory) if directory else self._backup_dir
        if not directory.is_dir():
            return []
        summaries: list[ArchiveSummary] = []
        for path in directory.glob(f"*{self._codec.suffix}"):
            if path.name.startswith(".") or not path.is_file():
                continue
            try:
                meta = self.read_metadata(path)
            except ArchiveError as exc:
                logger.warning("Unreadable archive %s: %s", path.name, exc)
                summaries.append(
                    ArchiveSummary(
                        id=path.name.removesuffix(self._codec.suffix),
                        type=None,
                        created_at=datetime.fromtimestamp(path.stat().st_mtime, UTC),
                        size=path.stat().st_size,
                        path=path,
                        readable=False,
                    )
                )
                continue
            summaries.append(
                ArchiveSummary(
                    id=meta.id,
                    type=meta.type,
                    created_at=meta.created_at,
                    size=meta.size,
                    path=path,
                    base_archive_ref=meta.base_archive_ref,
                )
            )
        summaries.sort(key=lambda s: (s.created_at, s.path.name), reverse=True)
        return summaries

    def latest_valid(
        self,
        scope: BackupType | str = BackupType.FULL,
        directory: str | Path | None = None,
        exact: bool = False,
        prefix: str | None = None,
    ) -> Path | None:
        """
        Newest archive that validates and can satisfy ``scope``.

        Args:
            scope: Backup type that must be covered.
            directory: Where to look; the configured backup dir if None.
            exact: Require the archive type to equal ``scope``.
            prefix: Only consider archives whose name starts with this.
        """
        scope = BackupType(scope)
        for summary in self.list(directory):
            if not summary.readable or summary.type is None:
                continue
            if prefix and not summary.path.name.startswith(prefix):
                continue
            if exact and summary.type != scope:
                continue
            if not exact and not summary.type.covers(scope):
                continue
            valid, reasons = self.validate(summary.path)
            if valid:
                return summary.path
            logger.warning("Skipping invalid archive %s: %s", summary.path.name, reasons)
        return None

    def prune(self, directory: str | Path | None = None, max_keep: int | None = None) -> list[Path]:
        """
        Delete the oldest archives beyond ``max_keep``.

        The newest archive is always kept, as is any base archive an
        archive being kept depends on.

        Returns:
            Deleted archive paths, oldest first.
        """
        keep_count = max(1, self._retention if max_keep is None else max_keep)
        summaries = self.list(directory)
        kept = summaries[:keep_count]
        needed = {s.base_archive_ref for s in kept if s.base_archive_ref}
        deleted: list[Path] = []
        for summary in reversed(summaries[keep_count:]):
            if summary.path.name in needed:
                logger.debug("Keeping %s: base of a retained archive", summary.path.name)
                continue
            summary.path.unlink()
            deleted.append(summary.path)
        if deleted:
            logger.info("Pruned %d archive(s)", len(deleted))
        return deleted

    def delete(self, archive_path: str | Path) -> None:
        """
        Delete one archive.

        Raises:
            ArchiveNotFoundError: If it does not exist.
        """
        path = Path(archive_path)
        if not path.is_file():
            raise ArchiveNotFoundError(f"Archive not found: {path}")
        path.unlink()
        logger.info("Deleted archive %s", path)

    # ── Restore ──────────────────────────────────────────────────────────

    def _chain(self, archive_path: Path) -> list[tuple[Path, BackupArchive]]:
        """Archive plus its bases, base first."""
        chain: list[tuple[Path, BackupArchive]] = []
        current: Path | None = archive_path
        visited: set[str] = set()
        while current is not None:
            if current.name in visited:
                raise ArchiveCorruptError(f"Circular base reference at {current.name}")
            visited.add(current.name)
            meta = self.read_metadata(current)
            chain.append((current, meta))
            if meta.type != BackupType.INCREMENTAL:
                break
            if not meta.base_archive_ref:
                raise ArchiveCorruptError(f"{current.name}: incremental without a base")
            current = current.parent / meta.base_archive_ref
            if not current.is_file():
                raise ArchiveNotFoundError(
                    f"Base archive {meta.base_archive_ref} of {archive_path.name} not found"
                )
        chain.reverse()
        return chain

    def _in_scope(self, rel: str, scope: BackupType | None) -> bool:
        if scope is None:
            return True
        for path in self.scope_paths(scope):
            prefix = path.rstrip("/")
            if rel == prefix or rel.startswith(prefix + "/"):
                return True
        return False

    def _scope_root(self, rel: str) -> str:
        """Configured path that contains ``rel``; ``rel`` itself otherwise."""
        for path in sorted(self.scope_paths(BackupType.FULL), key=len):
            prefix = path.rstrip("/")
            if rel == prefix or rel.startswith(prefix + "/"):
                return prefix
        return rel

    def restore(
        self,
        archive_path: str | Path,
        scope: BackupType | str | None = None,
        verify_only: bool = False,
    ) -> bool:
        """
        Validate and optionally apply an archive to the project.

        Files in scope are copied over the live tree. Incremental archives
        are applied after their base. Volume archives and the database
        dump go to the runtime (see :meth:`RuntimeData.restore`). When an
        executor is configured the apply runs as the ``restore`` safe
        operation, so a failed apply is rolled back to the pre-restore
        snapshot.

        Args:
            archive_path: The archive to restore.
            scope: Restrict to one backup type's paths; everything if None.
            verify_only: Validate only; the live tree is not touched.

        Returns:
            True on success.

        Raises:
            ArchiveNotFoundError: If the archive (or a base) does not exist.
            ArchiveCorruptError: If any archive in the chain fails validation.
            ArchiveError: If the archive cannot satisfy ``scope``.
            OperationFailedError: If the apply failed and was rolled back.
            RollbackPartialFailure: If the apply failed and rollback did not complete.
        """
        path = Path(archive_path)
        if not path.is_file():
            raise ArchiveNotFoundError(f"Archive not found: {path}")
        self._require_valid(path)
        if verify_only:
            logger.info("Archive %s verified", path.name)
            return True

        restore_scope = BackupType(scope) if scope else None
        chain = self._chain(path)
        archive = chain[-1][1]
        if restore_scope is not None and not archive.type.covers(restore_scope):
            raise ArchiveError(
                f"{path.name} is a {archive.type.value} archive and has no "
                f"{restore_scope.value} content"
            )

        with tempfile.TemporaryDirectory(prefix="stack-guard-restore-") as staging:
            plan: dict[str, Path] = {}
            runtime_plan: dict[str, Path] = {}
            for index, (member_path, meta) in enumerate(chain):
                if member_path != path:
                    self._require_valid(member_path)
                target = Path(staging) / str(index)
                self._codec.extract(member_path, target)
                root = next(p for p in target.iterdir() if p.is_dir())
                problems = verify_tree(root, meta.manifest)
                if problems:
                    raise ArchiveCorruptError(
                        f"{member_path.name} changed during extraction", reasons=problems
                    )
                for entry in meta.manifest:
                    if is_runtime_path(entry.path):
                        if restore_scope in (None, *_RUNTIME_TYPES):
                            runtime_plan[entry.path] = root / entry.path
                    elif self._in_scope(entry.path, restore_scope):
                        plan[entry.path] = root / entry.path

            logger.info(
                "Restoring %d file(s)%s from %s%s",
                len(plan),
                f" and {len(runtime_plan)} runtime item(s)" if runtime_plan else "",
                path.name,
                f" (scope {restore_scope.value})" if restore_scope else "",
            )
            self._apply(path, plan, runtime_plan, Path(staging) / "pre-restore")
        return True

    def _require_valid(self, path: Path) -> None:
        valid, reasons = self.validate(path)
        if not valid:
            raise ArchiveCorruptError(
                f"Archive {path.name} failed validation: {'; '.join(reasons)}",
                reasons=reasons,
            )

    def _apply(
        self,
        archive_path: Path,
        plan: dict[str, Path],
        runtime_plan: dict[str, Path],
        scratch: Path,
    ) -> None:
        if runtime_plan and self._runtime is None:
            logger.warning(
                "%s carries volumes or a database dump but no runtime is configured",
                archive_path.name,
            )

        def body(registry) -> int:
            for rel, source in sorted(plan.items()):
                target = self._base_dir / rel
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
            if runtime_plan and self._runtime is not None:
                self._runtime.restore(runtime_plan, scratch, registry)
            return len(plan)

        if self._executor is None:
            body(None)
            return
        roots = sorted({self._scope_root(rel) for rel in plan})
        result = self._executor.safe_operation(
            "restore",
            body,
            paths=[self._base_dir / r for r in roots],
            metadata={"archive": archive_path.name},
        )
        result.raise_for_failure()
