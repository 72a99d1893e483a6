"""
Docker Compose Backend
~~~~~~~~~~~~~~~~~~~~~~

Runs ``docker compose`` as a subprocess against one compose file.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from stack_guard.backends.base import OrchestrationBackend, ProcessResult
from stack_guard.exceptions import BackendError

__all__ = ["DockerComposeBackend"]

logger = logging.getLogger(__name__)


class DockerComposeBackend(OrchestrationBackend):
    """
    ``docker compose -f <file> [--env-file E] [-p P]`` wrapper.

    Args:
        compose_file: The project's compose file.
        env_file: Environment file passed with ``--env-file``.
        project_name: Compose project name passed with ``-p``.
        command: Base command; ``("docker", "compose")`` by default. Its
            first word also runs the helper containers for volume copies.
        timeout: Seconds before a single command is abandoned.
        helper_image: Image used to tar volume contents in and out.
    """

    def __init__(
        self,
        compose_file: str | Path,
        env_file: str | Path | None = None,
        project_name: str | None = None,
        command: Sequence[str] = ("docker", "compose"),
        timeout: float | None = None,
        helper_image: str = "alpine:latest",
    ) -> None:
        self._compose_file = Path(compose_file)
        self._env_file = Path(env_file) if env_file else None
        self._project_name = project_name
        self._command = tuple(command)
        self._timeout = timeout
        self._helper_image = helper_image

    def _base_args(self) -> list[str]:
        args = [*self._command, "-f", str(self._compose_file)]
        if self._env_file is not None and self._env_file.exists():
            args += ["--env-file", str(self._env_file)]
        if self._project_name:
            args += ["-p", self._project_name]
        return args

    def run(self, *args: str, check: bool = True, input: str | None = None) -> ProcessResult:
        """
        Run one compose sub-command.

        Raises:
            BackendError: If the command cannot be executed, or exits
                non-zero while ``check`` is set.
        """
        return self._invoke([*self._base_args(), *args], check=check, input=input)

    def _invoke(
        self, argv: list[str], check: bool = True, input: str | None = None
    ) -> ProcessResult:
        logger.debug("Running %s", " ".join(argv))
        try:
            completed = subprocess.run(
                argv,
                input=input,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise BackendError(f"Container runtime not found: {self._command[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise BackendError(
                f"Command timed out after {self._timeout}s: {' '.join(argv)}"
            ) from exc
        result = ProcessResult(
            args=tuple(argv),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if not result.ok:
            logger.debug("Command exited %d: %s", result.returncode, result.stderr.strip())
        return result.check() if check else result

    def up(self, services: Sequence[str] | None = None, recreate: bool = False) -> ProcessResult:
        args = ["up", "-d", "--remove-orphans"]
        if recreate:
            args += ["--no-deps", "--force-recreate"]
        return self.run(*args, *(services or ()))

    def stop(
        self, services: Sequence[str] | None = None, timeout: float | None = None
    ) -> ProcessResult:
        args = ["stop"]
        if timeout is not None:
            args += ["-t", str(int(timeout))]
        return self.run(*args, *(services or ()))

    def kill(self, services: Sequence[str] | None = None) -> ProcessResult:
        return self.run("kill", *(services or ()))

    def down(self) -> ProcessResult:
        return self.run("down", "--remove-orphans")

    def restart(self, services: Sequence[str] | None = None) -> ProcessResult:
        return self.run("restart", *(services or ()))

    def pull(self, services: Sequence[str] | None = None) -> ProcessResult:
        return self.run("pull", *(services or ()))

    def status(self, service: str) -> str:
        result = self.run("ps", "-a", "--format", "{{.Status}}", service, check=False)
        if not result.ok:
            if "no such service" in result.stderr.lower():
                return ""
            result.check()
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return lines[0] if lines else ""

    def running(self) -> list[str]:
        result = self.run("ps", "--services", "--filter", "status=running")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def services(self) -> list[str]:
        result = self.run("config", "--services")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def exec(
        self, service: str, command: Sequence[str], input: str | None = None
    ) -> ProcessResult:
        return self.run("exec", "-T", service, *command, input=input)

    def volumes(self) -> list[str]:
        result = self.run("volumes", "--format", "{{.Name}}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _helper(self, volume: str, mount: str, directory: Path, *command: str) -> ProcessResult:
        return self._invoke(
            [
                self._command[0],
                "run",
                "--rm",
                "-v",
                f"{volume}:{mount}",
                "-v",
                f"{directory.absolute()}:/backup",
                self._helper_image,
                *command,
            ]
        )

    def export_volume(self, volume: str, target: Path) -> None:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._helper(
            volume,
            "/source:ro",
            target.parent,
            "tar",
            "-czf",
            f"/backup/{target.name}",
            "-C",
            "/source",
            ".",
        )

    def import_volume(self, volume: str, source: Path) -> None:
        source = Path(source)
        self._invoke([self._command[0], "volume", "rm", "-f", volume])
        self._invoke([self._command[0], "volume", "create", volume])
        self._helper(
            volume,
            "/target",
            source.parent,
            "tar",
            "-xzf",
            f"/backup/{source.name}",
            "-C",
            "/target",
        )
