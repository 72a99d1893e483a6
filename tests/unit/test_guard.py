"""Tests for the StackGuard facade verbs."""

from datetime import UTC, datetime

import pytest

from stack_guard import StackGuard, __version__
from stack_guard.config.loader import load_config_from_dict
from stack_guard.core.context import RunContext
from stack_guard.core.states import ServiceState
from stack_guard.exceptions import (
    ArchiveNotFoundError,
    RestoreConflictError,
)
from stack_guard.observability.exporters.jsonl_exporter import JsonlFileExporter


class TestGuardBasics:
    def test_version_and_repr(self, guard, project):
        assert guard.version == __version__
        assert str(project) in repr(guard)

    def test_status(self, running_guard):
        status = running_guard.status()
        assert status.state == ServiceState.RUNNING
        assert all(r.healthy for r in status.health.values())
        assert status.versions["backend"] == "1.0.0"
        assert status.interrupted_operation is None

    def test_jsonl_audit_trail(self, config_data, backend, clock):
        config_data["observability"] = {"exporters": ["jsonl"]}
        config = load_config_from_dict(config_data)
        guard = StackGuard(
            context=RunContext.build(
                config, backend=backend, sleep=clock.sleep, monotonic=clock.monotonic
            )
        )
        guard.start()
        records = JsonlFileExporter(config.audit_file).read()
        assert [r["operation"] for r in records] == ["start"]
        assert records[0]["success"] is True

    def test_audit_trail_survives_restart(self, config_data, backend, clock):
        config_data["observability"] = {"exporters": ["jsonl"]}
        config = load_config_from_dict(config_data)

        def build():
            return StackGuard(
                context=RunContext.build(
                    config, backend=backend, sleep=clock.sleep, monotonic=clock.monotonic
                )
            )

        build().start()
        second = build()
        second.stop()
        assert [e.operation for e in second.get_audit_log()] == ["start", "stop"]
        assert second.get_metrics().operations_by_name == {"start": 1, "stop": 1}

    def test_metrics(self, running_guard):
        running_guard.stop()
        metrics = running_guard.get_metrics()
        assert metrics.operations_by_name == {"start": 1, "stop": 1}


class TestUpdateVerb:
    def test_noop_when_already_on_version(self, running_guard, project):
        result = running_guard.update("1.0.0")
        assert result.success
        assert running_guard.list_backups() == []

    def test_pre_update_backup(self, running_guard):
        running_guard.update("1.1.0")
        [summary] = running_guard.list_backups()
        assert summary.path.name.startswith("pre_update_")
        assert running_guard.status().versions["nginx"] == "1.1.0"

    def test_two_updates_within_one_second(self, running_guard, monkeypatch):
        fixed = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        monkeypatch.setattr(running_guard.engine, "_clock", lambda: fixed)
        running_guard.update("1.1.0")
        running_guard.update("1.2.0")
        names = sorted(s.path.name for s in running_guard.list_backups())
        assert names == [
            "pre_update_20260301_120000.tar.gz",
            "pre_update_20260301_120000_1.tar.gz",
        ]

    def test_no_backup(self, running_guard):
        running_guard.update("1.1.0", no_backup=True)
        assert running_guard.list_backups() == []

    def test_force_reapplies(self, running_guard, backend):
        running_guard.update("1.0.0", force=True, no_backup=True)
        assert "pull" in backend.call_names()


class TestRollbackVerb:
    def test_without_pre_update_backup(self, running_guard):
        with pytest.raises(ArchiveNotFoundError):
            running_guard.rollback()

    def test_rollback_to_pre_update(self, running_guard, backend):
        running_guard.update("1.1.0")
        running_guard.rollback()
        assert set(running_guard.status().versions.values()) == {"1.0.0"}
        assert set(backend.containers.values()) == {"1.0.0"}
        assert running_guard.controller.state == ServiceState.RUNNING


class TestLifecycleVerbs:
    def test_restart_from_stopped_starts(self, guard):
        result = guard.restart()
        assert result.name == "start"
        assert guard.controller.state == ServiceState.RUNNING


class TestSnapshotVerbs:
    def test_restore_snapshot_conflict(self, running_guard, project):
        [snapshot] = running_guard.list_snapshots()
        (project / "VERSION").write_text("9.9.9\n")

        with pytest.raises(RestoreConflictError):
            running_guard.restore_snapshot(snapshot.id)
        assert running_guard.restore_snapshot(snapshot.id, force=True)
        assert (project / "VERSION").read_text() == "1.0.0\n"

    def test_snapshot_records_runtime(self, running_guard, backend):
        backend.volume_data = {"stack_pgdata": b"", "stack_uploads": b""}
        result = running_guard.stop()
        metadata = running_guard.snapshots.get(result.snapshot_id).metadata
        assert metadata["running_services"] == ",".join(sorted(backend.services()))
        assert metadata["volumes"] == "stack_pgdata,stack_uploads"

    def test_reconcile_interrupted(self, guard, project):
        executor = guard.executor
        snapshot_id = executor.store.create("update", [project / ".env"])
        executor._write_marker("update", snapshot_id)
        (project / ".env").write_text("HALF=DONE\n")
        assert guard.status().interrupted_operation == "update"

        result = guard.reconcile()
        assert result.restored
        assert "DOMAIN=localhost" in (project / ".env").read_text()
        assert guard.status().interrupted_operation is None

    def test_mutating_verb_reconciles_first(self, guard, project):
        executor = guard.executor
        snapshot_id = executor.store.create("update", [project / ".env"])
        executor._write_marker("update", snapshot_id)
        (project / ".env").write_text("HALF=DONE\n")

        guard.start()
        assert guard.get_audit_log()[0].operation == "update"
        assert not guard.get_audit_log()[0].success
        assert guard.status().versions["backend"] == "1.0.0"
