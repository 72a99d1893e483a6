"""
stack-guard State & Type Enums
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Core enums for the managed service group's lifecycle, the transition
table that drives it, and the archive/recovery classifications.
"""

from __future__ import annotations

from enum import StrEnum

from stack_guard.exceptions import InvalidTransitionError

__all__ = [
    "ServiceState",
    "Transition",
    "TRANSITIONS",
    "next_state",
    "BackupType",
    "RecoveryMode",
    "EnvironmentState",
]


class ServiceState(StrEnum):
    """
    Lifecycle state of the managed service group.

    - STOPPED: No managed container is running.
    - STARTING / STOPPING / RESTARTING / UPDATING: A transition is in flight.
    - RUNNING: Every service reports healthy.
    - DEGRADED: Some services are healthy, some are not.
    - FAILED: A transition failed; rollback has been attempted.
    """

    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    DEGRADED = "DEGRADED"
    STOPPING = "STOPPING"
    RESTARTING = "RESTARTING"
    UPDATING = "UPDATING"
    FAILED = "FAILED"

    def is_transient(self) -> bool:
        """Return True while a transition is in flight."""
        return self in (
            ServiceState.STARTING,
            ServiceState.STOPPING,
            ServiceState.RESTARTING,
            ServiceState.UPDATING,
        )


class Transition(StrEnum):
    """Events that move the service group between states."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    UPDATE = "update"
    SUCCEED = "succeed"
    FAIL = "fail"
    STOPPED = "stopped"
    DEGRADE = "degrade"
    RECOVER = "recover"


_S = ServiceState
_T = Transition

TRANSITIONS: dict[tuple[ServiceState, Transition], ServiceState] = {
    (_S.STOPPED, _T.START): _S.STARTING,
    (_S.FAILED, _T.START): _S.STARTING,
    (_S.STARTING, _T.SUCCEED): _S.RUNNING,
    (_S.STARTING, _T.FAIL): _S.FAILED,
    (_S.RUNNING, _T.STOP): _S.STOPPING,
    (_S.DEGRADED, _T.STOP): _S.STOPPING,
    (_S.FAILED, _T.STOP): _S.STOPPING,
    (_S.STOPPING, _T.STOPPED): _S.STOPPED,
    (_S.STOPPING, _T.FAIL): _S.FAILED,
    (_S.RUNNING, _T.RESTART): _S.RESTARTING,
    (_S.DEGRADED, _T.RESTART): _S.RESTARTING,
    (_S.FAILED, _T.RESTART): _S.RESTARTING,
    (_S.RESTARTING, _T.SUCCEED): _S.RUNNING,
    (_S.RESTARTING, _T.FAIL): _S.FAILED,
    (_S.RUNNING, _T.UPDATE): _S.UPDATING,
    (_S.DEGRADED, _T.UPDATE): _S.UPDATING,
    (_S.UPDATING, _T.SUCCEED): _S.RUNNING,
    (_S.UPDATING, _T.FAIL): _S.FAILED,
    (_S.RUNNING, _T.DEGRADE): _S.DEGRADED,
    (_S.DEGRADED, _T.RECOVER): _S.RUNNING,
}


def next_state(state: ServiceState, transition: Transition) -> ServiceState:
    """
    Look up the state reached by applying ``transition`` to ``state``.

    Raises:
        InvalidTransitionError: If the pair is not in the transition table.
    """
    try:
        return TRANSITIONS[(state, transition)]
    except KeyError:
        raise InvalidTransitionError(
            f"Cannot {transition.value} while {state.value}",
            state=state.value,
            transition=transition.value,
        ) from None


class BackupType(StrEnum):
    """
    Archive classification.

    ``INCREMENTAL`` is produced only by ``create_incremental``.
    """

    FULL = "full"
    CONFIG = "config"
    DATA = "data"
    SSL = "ssl"
    INCREMENTAL = "incremental"

    def covers(self, scope: BackupType) -> bool:
        """Return True if an archive of this type can satisfy ``scope``."""
        if self in (BackupType.FULL, BackupType.INCREMENTAL):
            return True
        return self == scope


class RecoveryMode(StrEnum):
    """How disaster recovery picks its archive."""

    AUTO = "auto"
    MANUAL = "manual"


class EnvironmentState(StrEnum):
    """Assessment of the live environment before disaster recovery."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"
    CORRUPTED = "corrupted"
