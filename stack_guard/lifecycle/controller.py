"""
Service Lifecycle Controller
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Drives the managed service group through start, stop, restart and
update. Every transition runs as its own safe operation and is gated by
the health probe, so a transition either reaches its target state or
ends FAILED with the environment rolled back.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager

from stack_guard.backends.base import OrchestrationBackend
from stack_guard.core.executor import SafeOperationExecutor
from stack_guard.core.models import HealthResult, OperationResult
from stack_guard.core.polling import poll_until
from stack_guard.core.states import ServiceState, Transition, next_state
from stack_guard.exceptions import (
    BackendError,
    HealthCheckTimeout,
    LifecycleError,
    OperationInProgress,
)
from stack_guard.health.probe import HealthProbe
from stack_guard.lifecycle.versions import VersionStore
from stack_guard.rollback.registry import RollbackRegistry

__all__ = ["ServiceLifecycleController"]

logger = logging.getLogger(__name__)

_OUTCOME = {
    Transition.START: (Transition.SUCCEED, Transition.FAIL),
    Transition.STOP: (Transition.STOPPED, Transition.FAIL),
    Transition.RESTART: (Transition.SUCCEED, Transition.FAIL),
    Transition.UPDATE: (Transition.SUCCEED, Transition.FAIL),
}

_DRIFT = {
    (ServiceState.RUNNING, ServiceState.DEGRADED): Transition.DEGRADE,
    (ServiceState.DEGRADED, ServiceState.RUNNING): Transition.RECOVER,
}


class ServiceLifecycleController:
    """
    State machine over one compose-managed service group.

    One controller instance serializes transitions: a request made while
    another transition is in flight raises :class:`OperationInProgress`
    instead of queueing.

    Args:
        backend: Container orchestration backend.
        probe: Health probe for the managed services.
        executor: Safe operation executor every transition runs in.
        versions: Per-service version tags.
        start_timeout: Default health deadline for start/restart.
        stop_timeout: Default graceful stop deadline.
        update_timeout: Default health deadline after an update.
        poll_interval: Seconds between health polls.
        sleep: Sleep function used while polling.
        clock: Monotonic clock used while polling.
    """

    def __init__(
        self,
        backend: OrchestrationBackend,
        probe: HealthProbe,
        executor: SafeOperationExecutor,
        versions: VersionStore,
        start_timeout: float = 60.0,
        stop_timeout: float = 30.0,
        update_timeout: float = 120.0,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._probe = probe
        self._executor = executor
        self._versions = versions
        self._start_timeout = start_timeout
        self._stop_timeout = stop_timeout
        self._update_timeout = update_timeout
        self._interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._state: ServiceState | None = None
        self._busy = threading.Lock()

    # ── State ────────────────────────────────────────────────────────────

    @property
    def state(self) -> ServiceState:
        """Current state; derived from the probe on first access."""
        if self._state is None:
            return self.refresh_state()
        return self._state

    @property
    def last_known_state(self) -> ServiceState | None:
        """Current state without probing; None before the first probe."""
        return self._state

    def refresh_state(self) -> ServiceState:
        """
        Derive the state from a fresh ``check_all``.

        All healthy is RUNNING, some healthy is DEGRADED. With none healthy
        the group is STOPPED when nothing runs and FAILED otherwise. A
        transition in flight owns the state and is left alone.
        """
        if self._state is not None and self._state.is_transient():
            return self._state
        results = self._probe.check_all()
        healthy = sum(1 for r in results.values() if r.healthy)
        if results and healthy == len(results):
            state = ServiceState.RUNNING
        elif healthy:
            state = ServiceState.DEGRADED
        else:
            try:
                running = bool(self._backend.running())
            except BackendError as exc:
                logger.warning("Could not list running services: %s", exc)
                running = False
            state = ServiceState.FAILED if running else ServiceState.STOPPED

        drift = _DRIFT.get((self._state, state))
        if drift is not None:
            state = next_state(self._state, drift)
            if drift == Transition.DEGRADE:
                logger.warning(
                    "Service group degraded: %s",
                    ", ".join(n for n, r in results.items() if not r.healthy),
                )
            else:
                logger.info("Service group recovered")
        elif state != self._state:
            logger.info("Service group state: %s", state.value)
        self._state = state
        return state

    def health(self) -> dict[str, HealthResult]:
        """Single-attempt health of every managed service."""
        return self._probe.check_all()

    def current_versions(self) -> dict[str, str | None]:
        return self._versions.current_versions()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._busy.acquire(blocking=False):
            raise OperationInProgress(
                f"A lifecycle transition is already in progress ({self._state})"
            )
        try:
            yield
        finally:
            self._busy.release()

    def _run_transition(
        self,
        transition: Transition,
        name: str,
        body: Callable[[RollbackRegistry], object],
        postcondition: Callable[[], object] | None = None,
        metadata: dict[str, str] | None = None,
    ) -> OperationResult:
        previous = self.state
        self._state = next_state(previous, transition)
        logger.info("%s -> %s", previous.value, self._state.value)
        try:
            result = self._executor.safe_operation(
                name, body, postcondition=postcondition, metadata=metadata
            )
        except OperationInProgress:
            self._state = previous
            raise
        succeed, fail = _OUTCOME[transition]
        self._state = next_state(self._state, succeed if result.success else fail)
        log = logger.info if result.success else logger.error
        log("%s finished: %s", name, self._state.value)
        return result

    # ── Health gating ────────────────────────────────────────────────────

    def wait_healthy(self, timeout: float, services: Sequence[str] | None = None) -> None:
        """
        Poll until every (selected) service is healthy.

        Raises:
            HealthCheckTimeout: Naming the services still unhealthy.
        """
        names = list(services) if services else self._probe.services
        last: dict[str, HealthResult] = {}

        def all_healthy() -> bool:
            last.clear()
            last.update({n: self._probe.check(n) for n in names})
            return all(r.healthy for r in last.values())

        if poll_until(all_healthy, timeout, self._interval, clock=self._clock, sleep=self._sleep):
            return
        unhealthy = [n for n, r in last.items() if not r.healthy]
        raise HealthCheckTimeout(
            f"Services not healthy after {timeout:g}s: "
            + ", ".join(f"{n} ({last[n].reason})" for n in unhealthy),
            timeout=timeout,
            unhealthy=unhealthy,
        )

    def _stop_services(self, timeout: float, services: Sequence[str] | None = None) -> None:
        try:
            self._backend.stop(services, timeout=timeout)
        except BackendError as exc:
            logger.warning("Graceful stop failed: %s", exc)
        still_running = [s for s in self._backend.running() if not services or s in services]
        if not still_running:
            return
        logger.warning(
            "Still running after %gs, forcing: %s", timeout, ", ".join(still_running)
        )
        self._backend.kill(still_running)
        leftover = [s for s in self._backend.running() if s in still_running]
        if leftover:
            raise LifecycleError(f"Services refused to stop: {', '.join(leftover)}")

    # ── Transitions ──────────────────────────────────────────────────────

    def start(self, timeout: float | None = None) -> OperationResult:
        """
        Start the service group and wait for it to become healthy.

        Starting an already-running group is a successful no-op.
        """
        timeout = self._start_timeout if timeout is None else timeout
        with self._exclusive():
            if self.state == ServiceState.RUNNING:
                logger.info("Services already running")
                return OperationResult(name="start", success=True, output=self._state)

            def body(registry: RollbackRegistry) -> None:
                registry.register(
                    "stop services brought up by start",
                    lambda: self._stop_services(self._stop_timeout),
                )
                self._backend.up()

            return self._run_transition(
                Transition.START, "start", body, lambda: self.wait_healthy(timeout)
            )

    def stop(self, timeout: float | None = None) -> OperationResult:
        """
        Stop the service group; graceful first, forced after ``timeout``.

        Stopping an already-stopped group is a successful no-op.
        """
        timeout = self._stop_timeout if timeout is None else timeout
        with self._exclusive():
            if self.state == ServiceState.STOPPED:
                logger.info("Services already stopped")
                return OperationResult(name="stop", success=True, output=self._state)
            return self._run_transition(
                Transition.STOP, "stop", lambda registry: self._stop_services(timeout)
            )

    def restart(
        self, timeout: float | None = None, services: Sequence[str] | None = None
    ) -> OperationResult:
        """
        Restart as one safe operation.

        The whole group is stopped and brought up again. Named ``services``
        are restarted in place instead and only they are health-gated.
        The operation's snapshot is tagged ``checkpoint=pre-restart`` and is
        the one retrievable pre-restart checkpoint.
        """
        timeout = self._start_timeout if timeout is None else timeout
        targets = list(services) if services else None
        with self._exclusive():

            def body(registry: RollbackRegistry) -> None:
                registry.register("bring services back up", lambda: self._backend.up(targets))
                if targets:
                    self._backend.restart(targets)
                    return
                self._stop_services(self._stop_timeout)
                self._backend.up()

            return self._run_transition(
                Transition.RESTART,
                "restart",
                body,
                lambda: self.wait_healthy(timeout, targets),
                metadata={"checkpoint": "pre-restart"},
            )

    def update(
        self,
        new_version: str,
        timeout: float | None = None,
        services: Sequence[str] | None = None,
    ) -> OperationResult:
        """
        Move services to ``new_version`` one at a time, gated by health.

        On failure the compensations run newest first: version tags are
        reverted, then services are recreated on the previous version.
        The snapshot restore follows.

        Args:
            new_version: Image tag to deploy.
            timeout: Health deadline after the last service is replaced.
            services: Subset of services to update; all managed ones if None.
        """
        timeout = self._update_timeout if timeout is None else timeout
        targets = list(services) if services else self._probe.services
        with self._exclusive():
            previous = self._versions.current_versions()

            def body(registry: RollbackRegistry) -> dict[str, str | None]:
                registry.register(
                    "recreate services on previous version",
                    lambda: self._backend.up(targets, recreate=True),
                )
                self._versions.set_versions({s: new_version for s in targets})
                registry.register(
                    "revert version tags",
                    lambda: self._versions.set_versions({s: previous.get(s) for s in targets}),
                )
                self._backend.pull(targets)
                for service in targets:
                    logger.info("Replacing %s with %s", service, new_version)
                    self._stop_services(self._stop_timeout, [service])
                    self._backend.up([service], recreate=True)
                return {s: previous.get(s) for s in targets}

            return self._run_transition(
                Transition.UPDATE,
                "update",
                body,
                lambda: self.wait_healthy(timeout, targets),
                metadata={"target_version": new_version},
            )
