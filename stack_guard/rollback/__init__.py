"""stack-guard rollback system: snapshots and compensating actions."""

from stack_guard.rollback.registry import RollbackRegistry
from stack_guard.rollback.snapshot_store import SnapshotStore

__all__ = ["RollbackRegistry", "SnapshotStore"]
