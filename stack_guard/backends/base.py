"""
Orchestration Backend Interface
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Abstract contract for the container runtime that runs the managed
services. The lifecycle controller, health probe and disaster recovery
only ever talk to this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from stack_guard.exceptions import BackendError

__all__ = ["OrchestrationBackend", "ProcessResult"]


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of one backend command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> ProcessResult:
        """
        Return self if the command succeeded.

        Raises:
            BackendError: If the command exited non-zero.
        """
        if not self.ok:
            raise BackendError(
                f"Command failed ({self.returncode}): {' '.join(self.args)}",
                returncode=self.returncode,
                stderr=self.stderr.strip(),
            )
        return self


class OrchestrationBackend(ABC):
    """
    Abstract base for container orchestration backends.

    ``services`` arguments of ``None`` mean every service of the project.
    Mutating methods raise :class:`BackendError` on failure.
    """

    @abstractmethod
    def up(self, services: Sequence[str] | None = None, recreate: bool = False) -> ProcessResult:
        """Create and start services in the background."""

    @abstractmethod
    def stop(
        self, services: Sequence[str] | None = None, timeout: float | None = None
    ) -> ProcessResult:
        """Gracefully stop services, waiting up to ``timeout`` seconds."""

    @abstractmethod
    def kill(self, services: Sequence[str] | None = None) -> ProcessResult:
        """Force-stop services."""

    @abstractmethod
    def down(self) -> ProcessResult:
        """Stop and remove every container of the project."""

    @abstractmethod
    def restart(self, services: Sequence[str] | None = None) -> ProcessResult:
        """Restart running services in place."""

    @abstractmethod
    def pull(self, services: Sequence[str] | None = None) -> ProcessResult:
        """Pull the images configured for services."""

    @abstractmethod
    def status(self, service: str) -> str:
        """
        Return the raw container status line for ``service``.

        An empty string means no container exists.
        """

    @abstractmethod
    def running(self) -> list[str]:
        """Return the names of services with a running container."""

    @abstractmethod
    def services(self) -> list[str]:
        """Return every service defined by the project."""

    @abstractmethod
    def exec(
        self, service: str, command: Sequence[str], input: str | None = None
    ) -> ProcessResult:
        """Run ``command`` in the running container of ``service``."""

    @abstractmethod
    def volumes(self) -> list[str]:
        """Return the named volumes of the project."""

    @abstractmethod
    def export_volume(self, volume: str, target: Path) -> None:
        """Write the contents of ``volume`` to the ``.tar.gz`` file ``target``."""

    @abstractmethod
    def import_volume(self, volume: str, source: Path) -> None:
        """Replace the contents of ``volume`` with the ``.tar.gz`` file ``source``."""
