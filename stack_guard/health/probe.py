"""
Health Check Probe
~~~~~~~~~~~~~~~~~~

Side-effect-free, single-attempt readiness checks for managed services.
Callers own retries and deadlines (see :func:`stack_guard.core.polling.poll_until`).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

from stack_guard.backends.base import OrchestrationBackend
from stack_guard.core.models import HealthResult
from stack_guard.exceptions import BackendError

__all__ = ["HealthProbe", "ComposeHealthProbe", "HEALTHY_MARKER", "UNHEALTHY_MARKER"]

logger = logging.getLogger(__name__)

HEALTHY_MARKER = "(healthy)"
UNHEALTHY_MARKER = "(unhealthy)"
STARTING_MARKER = "(health: starting)"


class HealthProbe(ABC):
    """Interface for probing the managed services."""

    def __init__(self, services: Sequence[str]) -> None:
        self._services = list(services)

    @property
    def services(self) -> list[str]:
        return list(self._services)

    @abstractmethod
    def check(self, service_name: str) -> HealthResult:
        """Probe one service once. Must not raise for an unhealthy service."""

    def check_all(self) -> dict[str, HealthResult]:
        """Probe every service independently."""
        return {name: self.check(name) for name in self._services}


class ComposeHealthProbe(HealthProbe):
    """
    Health probe that reads the container status line from the backend.

    A status containing ``(healthy)`` is healthy. An ``Up`` status with no
    health marker is running but not yet healthy. Anything else, including
    a missing container, is unhealthy.
    """

    def __init__(self, backend: OrchestrationBackend, services: Sequence[str]) -> None:
        super().__init__(services)
        self._backend = backend

    def check(self, service_name: str) -> HealthResult:
        try:
            status = self._backend.status(service_name)
        except BackendError as exc:
            logger.debug("Status query for %s failed: %s", service_name, exc)
            return HealthResult(service_name, False, f"status query failed: {exc}")

        if not status:
            return HealthResult(service_name, False, "container not found")
        if HEALTHY_MARKER in status:
            return HealthResult(service_name, True, status)
        if UNHEALTHY_MARKER in status:
            return HealthResult(service_name, False, f"unhealthy: {status}")
        if STARTING_MARKER in status:
            return HealthResult(service_name, False, f"health check starting: {status}")
        if status.startswith("Up"):
            return HealthResult(service_name, False, f"running but not yet healthy: {status}")
        return HealthResult(service_name, False, f"not running: {status}")
