"""
End-to-end update scenarios against the in-memory compose backend.

Covers the emergency rollback path: a version that never turns healthy
must leave the group FAILED, with tags and containers back on the
previous version and the pre-update archive available.
"""

import pytest

from stack_guard.core.models import AuditFilter
from stack_guard.core.states import ServiceState
from stack_guard.exceptions import (
    HealthCheckTimeout,
    OperationFailedError,
    RollbackPartialFailure,
)


class TestUnhealthyUpdate:
    def test_emergency_rollback(self, running_guard, backend, project):
        env_before = (project / ".env").read_text()

        with pytest.raises(OperationFailedError) as exc_info:
            running_guard.update("2.0.0")

        error = exc_info.value
        assert not isinstance(error, RollbackPartialFailure)
        assert isinstance(error.original_error, HealthCheckTimeout)
        assert "2/2 compensating actions succeeded" in error.rollback_outcome

        assert running_guard.controller.state == ServiceState.FAILED
        assert (project / ".env").read_text() == env_before
        assert set(backend.containers.values()) == {"1.0.0"}

        [archive] = running_guard.list_backups()
        assert archive.path.name.startswith("pre_update_")
        assert running_guard.engine.validate(archive.path)[0]

        [entry] = running_guard.get_audit_log(AuditFilter(operation="update"))
        assert not entry.success
        assert entry.rollback_complete

    def test_recovers_with_start_after_failure(self, running_guard):
        with pytest.raises(OperationFailedError):
            running_guard.update("2.0.0", no_backup=True)
        running_guard.start()
        assert running_guard.controller.state == ServiceState.RUNNING

    def test_partial_rollback_reported(self, running_guard, backend):
        original_up = backend.up

        def flaky_up(services=None, recreate=False):
            if recreate and services and len(services) > 1:
                raise RuntimeError("daemon gone")
            return original_up(services, recreate)

        backend.up = flaky_up
        with pytest.raises(RollbackPartialFailure) as exc_info:
            running_guard.update("2.0.0", no_backup=True)
        assert exc_info.value.failed_actions == ["recreate services on previous version"]
        assert running_guard.controller.state == ServiceState.FAILED


class TestHealthyUpdateAndRollback:
    def test_update_then_rollback(self, running_guard, backend, project):
        running_guard.update("1.1.0")
        assert set(backend.containers.values()) == {"1.1.0"}
        (project / "static" / "docker-compose.yml").write_text("services: {}\n")

        running_guard.rollback()
        assert set(backend.containers.values()) == {"1.0.0"}
        assert "backend" in (project / "static" / "docker-compose.yml").read_text()
        assert running_guard.controller.state == ServiceState.RUNNING
