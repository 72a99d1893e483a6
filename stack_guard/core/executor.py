"""
Safe Operation Executor
~~~~~~~~~~~~~~~~~~~~~~~

The single rollback boundary. A safe operation snapshots the protected
paths, runs a straight-line body that registers compensations for effects
the snapshot cannot undo, and on any failure unwinds those compensations
and restores the snapshot.

An in-flight marker is written while the body runs so that an invocation
killed mid-operation can be reconciled by the next one.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stack_guard.core.lock import OperationLock
from stack_guard.core.models import AuditEntry, OperationResult
from stack_guard.core.records import dump_record, load_record
from stack_guard.core.states import ServiceState
from stack_guard.exceptions import OperationInterruptedError, SnapshotError
from stack_guard.observability.audit_log import AuditLog
from stack_guard.rollback.registry import RollbackRegistry
from stack_guard.rollback.snapshot_store import SnapshotStore

__all__ = ["SafeOperationExecutor", "INFLIGHT_NAME"]

logger = logging.getLogger(__name__)

INFLIGHT_NAME = ".inflight"


class SafeOperationExecutor:
    """
    Runs functions inside the snapshot + compensation envelope.

    Args:
        store: Where snapshots are kept.
        lock: Cross-invocation lock held for the duration of each operation.
        registry: Compensation ledger, reset at the start of each operation.
        audit_log: Receives one entry per operation.
        protected_paths: Default paths snapshotted when ``paths`` is omitted.
        retention: Snapshots kept after a successful operation.
        include_system_info: Record user/host details in each snapshot.
        state_provider: Returns the service state recorded in audit entries.
        metadata_provider: Returns extra metadata stored with every snapshot.
    """

    def __init__(
        self,
        store: SnapshotStore,
        lock: OperationLock,
        registry: RollbackRegistry | None = None,
        audit_log: AuditLog | None = None,
        protected_paths: Iterable[str | Path] = (),
        retention: int = 5,
        include_system_info: bool = False,
        state_provider: Callable[[], ServiceState | None] | None = None,
        metadata_provider: Callable[[], Mapping[str, str]] | None = None,
    ) -> None:
        self._store = store
        self._lock = lock
        self._registry = registry if registry is not None else RollbackRegistry()
        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._protected_paths = [Path(p) for p in protected_paths]
        self._retention = retention
        self._include_system_info = include_system_info
        self._state_provider = state_provider
        self._metadata_provider = metadata_provider

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def registry(self) -> RollbackRegistry:
        return self._registry

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def lock(self) -> OperationLock:
        return self._lock

    @property
    def marker_path(self) -> Path:
        return self._store.root / INFLIGHT_NAME

    def safe_operation(
        self,
        name: str,
        fn: Callable[[RollbackRegistry], Any],
        paths: Iterable[str | Path] | None = None,
        postcondition: Callable[[], Any] | None = None,
        bypass_snapshot: bool = False,
        metadata: Mapping[str, str] | None = None,
    ) -> OperationResult:
        """
        Run ``fn`` under snapshot protection.

        Args:
            name: Operation name; tags the snapshot and the audit entry.
            fn: Body. Receives the rollback registry to register
                compensations on. Its return value becomes ``output``.
            paths: Paths to snapshot; the configured protected paths if None.
            postcondition: Called after ``fn``; raising counts as failure.
            bypass_snapshot: Run without a snapshot. Only compensations
                protect the operation.
            metadata: Extra metadata stored with the snapshot.

        Returns:
            The operation result. Failures are never raised from here;
            call :meth:`OperationResult.raise_for_failure` to surface them.

        Raises:
            OperationInProgress: If another invocation holds the lock.
        """
        start = time.perf_counter()
        with self._lock:
            result = self._run(name, fn, paths, postcondition, bypass_snapshot, metadata)
        result.duration_ms = int((time.perf_counter() - start) * 1000)
        self._audit(result)
        return result

    def _run(
        self,
        name: str,
        fn: Callable[[RollbackRegistry], Any],
        paths: Iterable[str | Path] | None,
        postcondition: Callable[[], Any] | None,
        bypass_snapshot: bool,
        metadata: Mapping[str, str] | None,
    ) -> OperationResult:
        snapshot_id: str | None = None
        snapshot_path: str | None = None
        if bypass_snapshot:
            logger.warning("Running %s without a snapshot", name)
        else:
            targets = list(paths) if paths is not None else self._protected_paths
            try:
                snapshot_id = self._store.create(
                    name,
                    targets,
                    include_system_info=self._include_system_info,
                    metadata=self._snapshot_metadata(metadata),
                )
            except SnapshotError as exc:
                logger.error("Refusing to run %s: snapshot failed: %s", name, exc)
                return OperationResult(name=name, success=False, error=exc)
            snapshot_path = str(self._store.root / snapshot_id)

        self._registry.clear()
        self._write_marker(name, snapshot_id)
        logger.info("Starting %s (snapshot %s)", name, snapshot_id or "none")
        # KeyboardInterrupt and SystemExit leave the marker for reconcile().
        try:
            output = fn(self._registry)
            if postcondition is not None:
                postcondition()
        except Exception as exc:
            logger.error("%s failed: %s", name, exc)
            result = self._roll_back(name, snapshot_id, snapshot_path, exc)
            self.marker_path.unlink(missing_ok=True)
            return result

        self.marker_path.unlink(missing_ok=True)
        self._registry.clear()
        self._prune()
        logger.info("%s succeeded", name)
        return OperationResult(
            name=name,
            success=True,
            snapshot_id=snapshot_id,
            snapshot_path=snapshot_path,
            output=output,
        )

    def _roll_back(
        self,
        name: str,
        snapshot_id: str | None,
        snapshot_path: str | None,
        error: BaseException,
    ) -> OperationResult:
        result = OperationResult(
            name=name,
            success=False,
            snapshot_id=snapshot_id,
            snapshot_path=snapshot_path,
            error=error,
        )
        result.unwind_report = self._registry.unwind()
        if snapshot_id is not None:
            try:
                self._store.restore(snapshot_id, force=True)
                result.restored = True
            except (SnapshotError, OSError) as exc:
                logger.error("Restore of snapshot %s failed: %s", snapshot_id, exc)
                result.restored = False
                result.restore_error = str(exc)

        if result.rollback_complete:
            logger.warning("%s rolled back", name)
        else:
            logger.error(
                "%s rollback incomplete; manual inspection required (snapshot %s)",
                name,
                snapshot_path,
            )
        return result

    def _prune(self) -> None:
        try:
            self._store.prune(self._retention)
        except OSError as exc:
            logger.warning("Snapshot pruning failed: %s", exc)

    def _snapshot_metadata(self, metadata: Mapping[str, str] | None) -> dict[str, str]:
        merged = dict(self._metadata_provider()) if self._metadata_provider else {}
        merged.update(metadata or {})
        return merged

    def _audit(self, result: OperationResult) -> None:
        state = self._state_provider() if self._state_provider else None
        self._audit_log.write(AuditEntry.from_result(result, service_state=state))

    # ── In-flight marker ─────────────────────────────────────────────────

    def _write_marker(self, name: str, snapshot_id: str | None) -> None:
        self.marker_path.parent.mkdir(parents=True, exist_ok=True)
        self.marker_path.write_text(
            dump_record(
                {
                    "operation": name,
                    "snapshot_id": snapshot_id,
                    "pid": os.getpid(),
                    "started_at": datetime.now(UTC).isoformat(),
                }
            ),
            encoding="utf-8",
        )

    def pending(self) -> dict[str, str] | None:
        """Return the in-flight marker left by an interrupted run, if any."""
        if not self.marker_path.exists():
            return None
        try:
            return load_record(self.marker_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable in-flight marker %s: %s", self.marker_path, exc)
            return {}

    def reconcile(self) -> OperationResult | None:
        """
        Treat an interrupted safe operation as failed and restore its snapshot.

        Returns:
            The reconciliation result, or None if nothing was in flight.

        Raises:
            OperationInProgress: If another invocation holds the lock.
        """
        with self._lock:
            marker = self.pending()
            if marker is None:
                self._store.discard_partials()
                return None

            name = marker.get("operation", "unknown")
            snapshot_id = marker.get("snapshot_id")
            logger.warning(
                "Found interrupted operation %s (pid %s, started %s)",
                name,
                marker.get("pid", "?"),
                marker.get("started_at", "?"),
            )
            self._store.discard_partials()
            result = OperationResult(
                name=name,
                success=False,
                snapshot_id=snapshot_id,
                snapshot_path=str(self._store.root / snapshot_id) if snapshot_id else None,
                error=OperationInterruptedError(
                    f"{name} was interrupted before completing",
                    details=dict(marker),
                ),
            )
            if snapshot_id:
                try:
                    self._store.restore(snapshot_id, force=True)
                    result.restored = True
                except (SnapshotError, OSError) as exc:
                    logger.error("Reconcile restore of %s failed: %s", snapshot_id, exc)
                    result.restored = False
                    result.restore_error = str(exc)
            self.marker_path.unlink(missing_ok=True)

        self._audit(result)
        return result
