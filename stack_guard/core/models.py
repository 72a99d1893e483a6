"""
stack-guard Data Models
~~~~~~~~~~~~~~~~~~~~~~~

Dataclasses that flow between the snapshot store, the rollback registry,
the safe operation executor, the lifecycle controller and the backup
engine.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stack_guard.core.manifest import Manifest
from stack_guard.core.records import (
    dump_record,
    list_field,
    load_record,
    prefixed_fields,
)
from stack_guard.core.states import BackupType, EnvironmentState, ServiceState
from stack_guard.exceptions import OperationFailedError, RollbackPartialFailure

__all__ = [
    "Snapshot",
    "SnapshotSummary",
    "RollbackAction",
    "FailedAction",
    "ExecutionReport",
    "OperationResult",
    "HealthResult",
    "BackupArchive",
    "ArchiveSummary",
    "AuditEntry",
    "AuditFilter",
    "OperationMetrics",
    "RecoveryReport",
    "StackStatus",
]


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ── Snapshots ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Snapshot:
    """
    Point-in-time copy of a set of filesystem paths.

    Attributes:
        id: Unique snapshot ID (time + random suffix).
        operation_name: The operation this snapshot protects.
        created_at: Creation time, strictly increasing within a store.
        captured_paths: Absolute paths that existed and were copied.
        absent_paths: Absolute paths that did not exist at capture time.
        metadata: Free-form string metadata (system info, checkpoint tags).
        manifest: Integrity manifest of the stored copy.
    """

    id: str
    operation_name: str
    created_at: datetime
    captured_paths: tuple[str, ...] = ()
    absent_paths: tuple[str, ...] = ()
    metadata: dict[str, str] = field(default_factory=dict)
    manifest: Manifest = field(default_factory=Manifest, compare=False)

    def to_record(self) -> str:
        """Serialize everything except the manifest to key=value text."""
        return dump_record(
            {
                "id": self.id,
                "operation": self.operation_name,
                "created_at": self.created_at.isoformat(),
            },
            lists={"path": self.captured_paths, "absent": self.absent_paths},
            prefixed={"meta": self.metadata},
        )

    @classmethod
    def from_record(cls, text: str, manifest: Manifest | None = None) -> Snapshot:
        data = load_record(text)
        return cls(
            id=data["id"],
            operation_name=data.get("operation", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            captured_paths=tuple(list_field(data, "path")),
            absent_paths=tuple(list_field(data, "absent")),
            metadata=prefixed_fields(data, "meta"),
            manifest=manifest or Manifest(),
        )

    def summary(self, location: Path) -> SnapshotSummary:
        return SnapshotSummary(
            id=self.id,
            operation_name=self.operation_name,
            created_at=self.created_at,
            path_count=len(self.captured_paths),
            size=self.manifest.total_size,
            location=location,
        )


@dataclass(frozen=True)
class SnapshotSummary:
    """Lightweight listing row for a snapshot."""

    id: str
    operation_name: str
    created_at: datetime
    path_count: int
    size: int
    location: Path


# ── Rollback ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RollbackAction:
    """A deferred compensating step registered during a safe operation."""

    description: str
    action: Callable[[], Any]
    order: int


@dataclass(frozen=True)
class FailedAction:
    """A compensation that raised during unwind."""

    description: str
    error: str


@dataclass
class ExecutionReport:
    """Outcome of unwinding the rollback registry."""

    attempted: int = 0
    succeeded: int = 0
    failed: list[FailedAction] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def describe(self) -> str:
        if self.attempted == 0:
            return "No compensating actions were registered."
        text = f"{self.succeeded}/{self.attempted} compensating actions succeeded."
        for failure in self.failed:
            text += f"\nFailed: {failure.description} ({failure.error})"
        return text


@dataclass
class OperationResult:
    """
    The result of running a function under the safe operation envelope.

    Attributes:
        name: Operation name (also the snapshot's operation tag).
        success: Whether the body and its postcondition completed.
        snapshot_id: Snapshot taken before the body ran, if any.
        snapshot_path: Directory of that snapshot, for manual recovery.
        output: Return value of the body.
        error: The original failure.
        unwind_report: Outcome of the compensating actions.
        restored: Whether the snapshot restore succeeded (``None`` if not tried).
        restore_error: Why the snapshot restore failed.
        duration_ms: Wall-clock time of the whole envelope.
    """

    name: str
    success: bool
    snapshot_id: str | None = None
    snapshot_path: str | None = None
    output: Any = None
    error: BaseException | None = None
    unwind_report: ExecutionReport | None = None
    restored: bool | None = None
    restore_error: str | None = None
    duration_ms: int = 0

    @property
    def rollback_attempted(self) -> bool:
        return self.unwind_report is not None or self.restored is not None

    @property
    def rollback_complete(self) -> bool:
        """True when every compensation and the snapshot restore succeeded."""
        unwind_ok = self.unwind_report is None or self.unwind_report.ok
        restore_ok = self.restored is not False
        return self.rollback_attempted and unwind_ok and restore_ok

    def rollback_summary(self) -> str:
        if not self.rollback_attempted:
            return "Rollback was not attempted."
        lines = []
        if self.unwind_report is not None:
            lines.append(self.unwind_report.describe())
        if self.restored is True:
            lines.append(f"Snapshot {self.snapshot_id} restored.")
        elif self.restored is False:
            lines.append(
                f"Snapshot {self.snapshot_id} restore FAILED: {self.restore_error}"
            )
        return "\n".join(lines)

    def raise_for_failure(self) -> None:
        """
        Re-surface a failure with full context.

        Raises:
            RollbackPartialFailure: If a compensation or the restore failed.
            OperationFailedError: If the operation failed but rollback completed.
        """
        if self.success:
            return
        kwargs = dict(
            operation=self.name,
            original_error=self.error,
            rollback_outcome=self.rollback_summary(),
            snapshot_path=self.snapshot_path,
        )
        if self.rollback_attempted and not self.rollback_complete:
            failed = [f.description for f in (self.unwind_report or ExecutionReport()).failed]
            if self.restored is False:
                failed.append(f"restore snapshot {self.snapshot_id}")
            raise RollbackPartialFailure(
                f'Rollback of "{self.name}" did not complete',
                failed_actions=failed,
                **kwargs,
            ) from self.error
        raise OperationFailedError(f'"{self.name}" failed', **kwargs) from self.error


# ── Health ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class HealthResult:
    """Single-attempt health probe result. Never persisted."""

    service_name: str
    healthy: bool
    reason: str = ""
    checked_at: datetime = field(default_factory=_utcnow)


# ── Archives ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BackupArchive:
    """
    Durable, user-facing backup archive metadata (``backup.env``).

    ``size`` and ``compressed_path`` describe the published ``.tar.gz``;
    they are unknown while the archive is being staged.
    """

    id: str
    type: BackupType
    created_at: datetime
    base_archive_ref: str | None = None
    size: int = 0
    manifest: Manifest = field(default_factory=Manifest, compare=False)
    compressed_path: Path | None = None
    scope_paths: tuple[str, ...] = ()
    tool_version: str = ""

    def to_record(self) -> str:
        return dump_record(
            {
                "id": self.id,
                "type": self.type.value,
                "created_at": self.created_at.isoformat(),
                "base_archive": self.base_archive_ref,
                "file_count": len(self.manifest),
                "content_size": self.manifest.total_size,
                "tool_version": self.tool_version or None,
            },
            lists={"scope": self.scope_paths},
        )

    @classmethod
    def from_record(
        cls,
        text: str,
        manifest: Manifest | None = None,
        compressed_path: Path | None = None,
        size: int = 0,
    ) -> BackupArchive:
        data = load_record(text)
        return cls(
            id=data["id"],
            type=BackupType(data["type"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            base_archive_ref=data.get("base_archive"),
            size=size,
            manifest=manifest or Manifest(),
            compressed_path=compressed_path,
            scope_paths=tuple(list_field(data, "scope")),
            tool_version=data.get("tool_version", ""),
        )


@dataclass(frozen=True)
class ArchiveSummary:
    """Listing row for an archive in a backup directory."""

    id: str
    type: BackupType | None
    created_at: datetime
    size: int
    path: Path
    base_archive_ref: str | None = None
    readable: bool = True


# ── Audit ────────────────────────────────────────────────────────────────────


@dataclass
class AuditEntry:
    """Record written for every safe operation, success or failure."""

    operation: str
    success: bool
    snapshot_id: str | None = None
    duration_ms: int = 0
    rollback_attempted: bool = False
    rollback_complete: bool = False
    error: str | None = None
    service_state: ServiceState | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_result(
        cls, result: OperationResult, service_state: ServiceState | None = None
    ) -> AuditEntry:
        return cls(
            operation=result.name,
            success=result.success,
            snapshot_id=result.snapshot_id,
            duration_ms=result.duration_ms,
            rollback_attempted=result.rollback_attempted,
            rollback_complete=result.rollback_complete,
            error=str(result.error) if result.error else None,
            service_state=service_state,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "operation": self.operation,
            "success": self.success,
            "snapshot_id": self.snapshot_id,
            "duration_ms": self.duration_ms,
            "rollback_attempted": self.rollback_attempted,
            "rollback_complete": self.rollback_complete,
            "error": self.error,
            "service_state": self.service_state.value if self.service_state else None,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEntry:
        """Inverse of :meth:`to_dict`."""
        state = data.get("service_state")
        return cls(
            operation=data["operation"],
            success=bool(data["success"]),
            snapshot_id=data.get("snapshot_id"),
            duration_ms=int(data.get("duration_ms", 0)),
            rollback_attempted=bool(data.get("rollback_attempted", False)),
            rollback_complete=bool(data.get("rollback_complete", False)),
            error=data.get("error"),
            service_state=ServiceState(state) if state else None,
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class AuditFilter:
    """Filter criteria for querying the audit log."""

    operation: str | None = None
    success: bool | None = None
    from_time: datetime | None = None
    to_time: datetime | None = None
    limit: int = 100


@dataclass
class OperationMetrics:
    """Prometheus-style metrics snapshot."""

    total_operations: int = 0
    succeeded: int = 0
    failed: int = 0
    rollbacks: int = 0
    rollback_failures: int = 0
    avg_duration_ms: float = 0.0
    operations_by_name: dict[str, int] = field(default_factory=dict)

    def to_prometheus(self) -> str:
        """Render as Prometheus text exposition format."""
        lines: list[str] = [
            f"stack_guard_operations_total {self.total_operations}",
            f"stack_guard_operations_succeeded {self.succeeded}",
            f"stack_guard_operations_failed {self.failed}",
            f"stack_guard_rollbacks {self.rollbacks}",
            f"stack_guard_rollback_failures {self.rollback_failures}",
            f"stack_guard_avg_duration_ms {self.avg_duration_ms}",
        ]
        for name, count in self.operations_by_name.items():
            lines.append(f'stack_guard_operations_by_name{{operation="{name}"}} {count}')
        return "\n".join(lines) + "\n"


# ── Disaster recovery ────────────────────────────────────────────────────────


@dataclass
class RecoveryReport:
    """Outcome of a disaster recovery run."""

    mode: str
    environment_state: EnvironmentState
    archive: Path | None = None
    success: bool = False
    emergency_backup: Path | None = None
    services_restarted: bool = False
    messages: list[str] = field(default_factory=list)
    report_path: Path | None = None
    started_at: datetime = field(default_factory=_utcnow)

    def render(self) -> str:
        """Render the plain-text report written next to the recovery logs."""
        status = "success" if self.success else "failed"
        lines = [
            "# stack-guard Disaster Recovery Report",
            f"# Generated: {_utcnow().isoformat()}",
            "",
            "## Recovery Details",
            f"- Archive: {self.archive.name if self.archive else '(none)'}",
            f"- Mode: {self.mode}",
            f"- Environment before recovery: {self.environment_state.value}",
            f"- Emergency backup: {self.emergency_backup or '(none)'}",
            f"- Services restarted: {'yes' if self.services_restarted else 'no'}",
            f"- Status: {status}",
            "",
            "## Log",
            *[f"- {message}" for message in self.messages],
        ]
        return "\n".join(lines) + "\n"


@dataclass
class StackStatus:
    """Point-in-time view of the managed stack for the ``status`` verb."""

    state: ServiceState
    health: dict[str, HealthResult] = field(default_factory=dict)
    versions: dict[str, str | None] = field(default_factory=dict)
    interrupted_operation: str | None = None
