"""Tests for the safe operation executor."""

import os
import socket

import pytest

from stack_guard.core.executor import SafeOperationExecutor
from stack_guard.core.lock import LOCK_NAME, OperationLock
from stack_guard.core.models import AuditFilter
from stack_guard.core.records import dump_record
from stack_guard.exceptions import (
    OperationFailedError,
    OperationInProgress,
    OperationInterruptedError,
    RollbackPartialFailure,
    SnapshotCreationError,
)
from stack_guard.observability.audit_log import AuditLog
from stack_guard.rollback.registry import RollbackRegistry
from stack_guard.rollback.snapshot_store import SnapshotStore


@pytest.fixture
def live(tmp_path):
    target = tmp_path / "live.conf"
    target.write_text("original\n")
    return target


@pytest.fixture
def executor(tmp_path, live):
    return SafeOperationExecutor(
        store=SnapshotStore(tmp_path / "snapshots"),
        lock=OperationLock(tmp_path / "state"),
        protected_paths=[live],
        retention=2,
    )


class TestSafeOperation:
    def test_success(self, executor, live):
        def body(registry):
            registry.register("undo", lambda: None)
            live.write_text("changed\n")
            return 42

        result = executor.safe_operation("edit", body)
        assert result.success
        assert result.output == 42
        assert result.snapshot_id is not None
        assert not result.rollback_attempted
        assert len(executor.registry) == 0
        assert live.read_text() == "changed\n"
        assert not executor.marker_path.exists()
        result.raise_for_failure()

    def test_failure_restores_snapshot(self, executor, live):
        def body(registry):
            live.write_text("half-written")
            raise RuntimeError("disk full")

        result = executor.safe_operation("edit", body)
        assert not result.success
        assert result.restored is True
        assert result.rollback_complete
        assert live.read_text() == "original\n"

        with pytest.raises(OperationFailedError) as exc_info:
            result.raise_for_failure()
        assert not isinstance(exc_info.value, RollbackPartialFailure)
        assert isinstance(exc_info.value.original_error, RuntimeError)
        assert "What was attempted" in str(exc_info.value)
        assert result.snapshot_path in str(exc_info.value)

    def test_postcondition_failure_rolls_back(self, executor, live):
        def body(registry):
            live.write_text("new\n")

        def unhealthy():
            raise TimeoutError("never healthy")

        result = executor.safe_operation("edit", body, postcondition=unhealthy)
        assert not result.success
        assert live.read_text() == "original\n"

    def test_compensations_run_newest_first(self, executor):
        calls = []

        def body(registry):
            registry.register("first", lambda: calls.append("first"))
            registry.register("second", lambda: calls.append("second"))
            raise RuntimeError("boom")

        result = executor.safe_operation("op", body)
        assert calls == ["second", "first"]
        assert result.unwind_report.succeeded == 2

    def test_failed_compensation_is_partial_failure(self, executor, live):
        def body(registry):
            registry.register("restart container", lambda: 1 / 0)
            live.write_text("changed\n")
            raise RuntimeError("boom")

        result = executor.safe_operation("op", body)
        assert result.restored is True
        assert live.read_text() == "original\n"
        assert not result.rollback_complete

        with pytest.raises(RollbackPartialFailure) as exc_info:
            result.raise_for_failure()
        assert exc_info.value.failed_actions == ["restart container"]
        assert "manually" in str(exc_info.value)

    def test_capture_failure_skips_body(self, tmp_path, live):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        executor = SafeOperationExecutor(
            store=SnapshotStore(blocker),
            lock=OperationLock(tmp_path / "state"),
            protected_paths=[live],
        )
        called = []
        result = executor.safe_operation("op", lambda registry: called.append(1))
        assert not result.success
        assert called == []
        assert isinstance(result.error, SnapshotCreationError)
        assert not result.rollback_attempted

    def test_bypass_snapshot(self, executor):
        result = executor.safe_operation("op", lambda registry: "ran", bypass_snapshot=True)
        assert result.success
        assert result.snapshot_id is None
        assert executor.store.list() == []

    def test_marker_present_while_running(self, executor):
        seen = {}

        def body(registry):
            seen.update(executor.pending())

        executor.safe_operation("update", body)
        assert seen["operation"] == "update"
        assert seen["pid"] == str(os.getpid())
        assert executor.pending() is None

    def test_refused_while_lock_held_elsewhere(self, executor, tmp_path):
        (tmp_path / "state").mkdir()
        (tmp_path / "state" / LOCK_NAME).write_text(
            dump_record({"pid": os.getppid(), "host": socket.gethostname()})
        )
        with pytest.raises(OperationInProgress):
            executor.safe_operation("op", lambda registry: None)

    def test_prunes_to_retention(self, executor):
        for _ in range(4):
            executor.safe_operation("op", lambda registry: None)
        assert len(executor.store.list()) == 2

    def test_every_operation_is_audited(self, executor):
        executor.safe_operation("ok", lambda registry: None)
        executor.safe_operation("bad", lambda registry: 1 / 0)

        entries = executor.audit_log.query()
        assert [(e.operation, e.success) for e in entries] == [("ok", True), ("bad", False)]
        [failed] = executor.audit_log.query(AuditFilter(success=False))
        assert failed.rollback_attempted
        assert failed.rollback_complete


class TestReconcile:
    def test_nothing_pending(self, executor):
        assert executor.reconcile() is None

    def test_interrupted_operation_is_restored(self, executor, live):
        snapshot_id = executor.store.create("update", [live])
        executor._write_marker("update", snapshot_id)
        live.write_text("left half-done by a killed run\n")

        result = executor.reconcile()
        assert result is not None
        assert result.name == "update"
        assert result.restored is True
        assert isinstance(result.error, OperationInterruptedError)
        assert live.read_text() == "original\n"
        assert not executor.marker_path.exists()
        assert executor.audit_log.query()[-1].operation == "update"

    def test_ctrl_c_leaves_marker_for_next_run(self, executor, live):
        def body(registry):
            live.write_text("half-written\n")
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            executor.safe_operation("edit", body)

        assert executor.pending()["operation"] == "edit"
        assert not executor.lock.held

        result = executor.reconcile()
        assert result is not None
        assert result.restored is True
        assert live.read_text() == "original\n"
        assert executor.pending() is None


class TestInjectedCollaborators:
    def test_empty_audit_log_and_registry_are_used(self, tmp_path, live):
        audit_log = AuditLog()
        registry = RollbackRegistry()
        executor = SafeOperationExecutor(
            store=SnapshotStore(tmp_path / "snapshots"),
            lock=OperationLock(tmp_path / "state"),
            registry=registry,
            audit_log=audit_log,
            protected_paths=[live],
        )
        assert executor.audit_log is audit_log
        assert executor.registry is registry

        executor.safe_operation("edit", lambda registry: None)
        assert [e.operation for e in audit_log.query()] == ["edit"]

    def test_metadata_provider_feeds_snapshots(self, tmp_path, live):
        executor = SafeOperationExecutor(
            store=SnapshotStore(tmp_path / "snapshots"),
            lock=OperationLock(tmp_path / "state"),
            protected_paths=[live],
            metadata_provider=lambda: {"running_services": "db", "checkpoint": "auto"},
        )
        result = executor.safe_operation(
            "edit", lambda registry: None, metadata={"checkpoint": "manual"}
        )
        snapshot = executor.store.get(result.snapshot_id)
        assert snapshot.metadata["running_services"] == "db"
        assert snapshot.metadata["checkpoint"] == "manual"
