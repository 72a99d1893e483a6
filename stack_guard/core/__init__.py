"""stack-guard core: data models and the safe operation envelope."""

from stack_guard.core.models import (
    AuditEntry,
    BackupArchive,
    ExecutionReport,
    HealthResult,
    OperationResult,
    RollbackAction,
    Snapshot,
)
from stack_guard.core.states import BackupType, ServiceState, Transition

__all__ = [
    "ServiceState",
    "Transition",
    "BackupType",
    "Snapshot",
    "RollbackAction",
    "ExecutionReport",
    "OperationResult",
    "HealthResult",
    "BackupArchive",
    "AuditEntry",
]
