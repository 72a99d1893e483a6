"""
stack-guard: recovery-oriented operations for Docker Compose stacks.

stack-guard wraps every risky change to a single-host compose deployment
in a snapshot/rollback envelope, providing:

- Crash-safe mutation of config files, certificates and services
- Health-gated start, stop, restart and update
- Automatic emergency rollback when an update never turns healthy
- Validated, atomically published backup archives
- Disaster recovery from the newest valid archive
- Full audit logging of every operation

Quick Start::

    from stack_guard import StackGuard

    guard = StackGuard.from_config("stack-guard.yaml")

    guard.backup("config")
    guard.update("2.1.0")       # rolls back on its own if 2.1.0 never turns healthy
"""

from stack_guard.core.guard import StackGuard
from stack_guard.core.models import (
    ArchiveSummary,
    AuditEntry,
    AuditFilter,
    HealthResult,
    OperationMetrics,
    OperationResult,
    RecoveryReport,
    Snapshot,
    SnapshotSummary,
    StackStatus,
)
from stack_guard.core.states import (
    BackupType,
    EnvironmentState,
    RecoveryMode,
    ServiceState,
)
from stack_guard.observability.exporters.stdout_exporter import StdoutExporter

__version__ = "0.1.0"

__all__ = [
    # Main class
    "StackGuard",
    # Enums
    "ServiceState",
    "BackupType",
    "RecoveryMode",
    "EnvironmentState",
    # Models
    "Snapshot",
    "SnapshotSummary",
    "OperationResult",
    "HealthResult",
    "ArchiveSummary",
    "RecoveryReport",
    "StackStatus",
    "AuditEntry",
    "AuditFilter",
    "OperationMetrics",
    # Exporters
    "StdoutExporter",
]
