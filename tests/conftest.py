"""Shared fixtures for stack-guard tests."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from stack_guard import StackGuard
from stack_guard.backends.base import OrchestrationBackend, ProcessResult
from stack_guard.config.loader import load_config_from_dict
from stack_guard.core.context import RunContext
from stack_guard.exceptions import BackendError
from stack_guard.lifecycle.versions import VersionStore

SERVICES = ["database", "backend", "frontend", "engine", "nginx"]


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBackend(OrchestrationBackend):
    """
    In-memory compose project.

    A container is created with the version its service's tag has in the
    env file at ``up`` time. Containers on a version in
    ``unhealthy_versions`` run but never turn healthy. Services in
    ``stuck`` ignore a graceful stop. Volumes are byte strings in
    ``volume_data`` and the database is the SQL text in ``database``.
    """

    def __init__(
        self,
        env_file: Path,
        services: Sequence[str] = SERVICES,
        unhealthy_versions: Sequence[str] = (),
        stuck: Sequence[str] = (),
    ) -> None:
        self._versions = VersionStore(env_file, services)
        self._services = list(services)
        self.unhealthy_versions = set(unhealthy_versions)
        self.stuck = set(stuck)
        self.containers: dict[str, str | None] = {}
        self.running_set: set[str] = set()
        self.status_overrides: dict[str, str] = {}
        self.failing_status: set[str] = set()
        self.fail_pull = False
        self.volume_data: dict[str, bytes] = {}
        self.fail_volumes: set[str] = set()
        self.database = "-- empty database\n"
        self.calls: list[tuple] = []

    def _ok(self, *args: str) -> ProcessResult:
        return ProcessResult(args=("fake", *args), returncode=0)

    def _targets(self, services: Sequence[str] | None) -> list[str]:
        return list(services) if services else list(self._services)

    def up(self, services=None, recreate=False) -> ProcessResult:
        self.calls.append(("up", tuple(self._targets(services)), recreate))
        tags = self._versions.current_versions()
        for name in self._targets(services):
            if recreate or name not in self.running_set:
                self.containers[name] = tags.get(name)
            self.running_set.add(name)
        return self._ok("up")

    def stop(self, services=None, timeout=None) -> ProcessResult:
        self.calls.append(("stop", tuple(self._targets(services)), timeout))
        for name in self._targets(services):
            if name not in self.stuck:
                self.running_set.discard(name)
        return self._ok("stop")

    def kill(self, services=None) -> ProcessResult:
        self.calls.append(("kill", tuple(self._targets(services))))
        for name in self._targets(services):
            self.running_set.discard(name)
        return self._ok("kill")

    def down(self) -> ProcessResult:
        self.calls.append(("down",))
        self.running_set.clear()
        self.containers.clear()
        return self._ok("down")

    def restart(self, services=None) -> ProcessResult:
        self.calls.append(("restart", tuple(self._targets(services))))
        for name in self._targets(services):
            if name in self.containers:
                self.running_set.add(name)
        return self._ok("restart")

    def pull(self, services=None) -> ProcessResult:
        self.calls.append(("pull", tuple(self._targets(services))))
        if self.fail_pull:
            raise BackendError("pull failed", returncode=1)
        return self._ok("pull")

    def status(self, service: str) -> str:
        if service in self.failing_status:
            raise BackendError(f"status failed for {service}", returncode=1)
        if service in self.status_overrides:
            return self.status_overrides[service]
        if service not in self.containers:
            return ""
        if service not in self.running_set:
            return "Exited (0) 3 seconds ago"
        if self.containers[service] in self.unhealthy_versions:
            return "Up 10 seconds (unhealthy)"
        return "Up 10 seconds (healthy)"

    def running(self) -> list[str]:
        return sorted(self.running_set)

    def services(self) -> list[str]:
        return list(self._services)

    def exec(self, service, command, input=None) -> ProcessResult:
        self.calls.append(("exec", service, tuple(command)))
        if service not in self.running_set:
            raise BackendError(f"service {service} is not running", returncode=1)
        if command[0] == "pg_dump":
            return ProcessResult(args=("fake", "exec"), returncode=0, stdout=self.database)
        if command[0] == "psql":
            self.database = input or ""
        return self._ok("exec")

    def volumes(self) -> list[str]:
        return sorted(self.volume_data)

    def export_volume(self, volume, target) -> None:
        self.calls.append(("export_volume", volume))
        if volume in self.fail_volumes:
            raise BackendError(f"cannot export {volume}", returncode=1)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.volume_data[volume])

    def import_volume(self, volume, source) -> None:
        self.calls.append(("import_volume", volume))
        if self.running_set:
            raise BackendError(f"volume {volume} is in use", returncode=1)
        self.volume_data[volume] = source.read_bytes()

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


# ── Project tree ─────────────────────────────────────────────────────────────


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A minimal managed project on disk."""
    root = tmp_path / "project"
    (root / "static").mkdir(parents=True)
    (root / "ssl").mkdir()
    (root / "data").mkdir()
    (root / ".env").write_text(
        "# managed by stack-guard tests\n"
        "DOMAIN=localhost\n"
        + "".join(f"STACK_{s.upper()}_TAG=1.0.0\n" for s in SERVICES),
        encoding="utf-8",
    )
    (root / "static" / "docker-compose.yml").write_text(
        "services:\n  backend:\n    image: example/backend:${STACK_BACKEND_TAG}\n",
        encoding="utf-8",
    )
    (root / "ssl" / "server.crt").write_text("CERTIFICATE\n", encoding="utf-8")
    (root / "ssl" / ".ssl_info").write_text("domain=localhost\n", encoding="utf-8")
    (root / "data" / "db.sql").write_text("INSERT 1;\n", encoding="utf-8")
    (root / "VERSION").write_text("1.0.0\n", encoding="utf-8")
    return root


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(project: Path) -> FakeBackend:
    return FakeBackend(project / ".env", unhealthy_versions={"2.0.0"})


@pytest.fixture
def config_data(project: Path) -> dict:
    return {
        "project": {"base_dir": str(project)},
        "snapshot": {"include_system_info": False},
        "timeouts": {"start": 1.0, "stop": 1.0, "update": 1.0},
        "health": {"interval": 0.25},
        "observability": {"exporters": []},
    }


@pytest.fixture
def guard(config_data: dict, backend: FakeBackend, clock: FakeClock) -> StackGuard:
    """A StackGuard wired to the fake backend and fake clock."""
    config = load_config_from_dict(config_data)
    context = RunContext.build(
        config, backend=backend, sleep=clock.sleep, monotonic=clock.monotonic
    )
    return StackGuard(context=context)


@pytest.fixture
def running_guard(guard: StackGuard) -> StackGuard:
    """A StackGuard whose services have been started."""
    guard.start()
    return guard
