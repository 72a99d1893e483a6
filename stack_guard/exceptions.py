"""
stack-guard Custom Exceptions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

All custom exception classes for stack-guard, organized by domain.
Every distinct failure mode has its own exception type.

**Structured Error Messages**

Failures of mutating operations provide three structured fields:
- ``what_attempted``: The operation that was running
- ``rollback_outcome``: Whether rollback ran and how it ended
- ``recovery_hint``: Where the retained snapshot/archive lives
"""

from __future__ import annotations

__all__ = [
    # Base
    "StackGuardError",
    # Config
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigValidationError",
    # Snapshot
    "SnapshotError",
    "SnapshotCreationError",
    "SnapshotNotFoundError",
    "SnapshotCorruptError",
    "RestoreConflictError",
    # Lifecycle
    "LifecycleError",
    "OperationInProgress",
    "InvalidTransitionError",
    "HealthCheckTimeout",
    "BackendError",
    # Archive
    "ArchiveError",
    "ArchiveCorruptError",
    "ArchiveWriteError",
    "ArchiveNotFoundError",
    # Safe operations
    "OperationFailedError",
    "OperationInterruptedError",
    "RollbackPartialFailure",
]


# ── Formatting Helper ────────────────────────────────────────────────────────

_SEPARATOR = "─" * 52


def _format_structured_error(
    title: str,
    what_attempted: str,
    rollback_outcome: str,
    recovery_hint: str,
) -> str:
    """Build a structured, multi-section error message."""
    lines = [
        f"  {title}",
        f"  {_SEPARATOR}",
        "  What was attempted:",
        *[f"    {line}" for line in what_attempted.strip().splitlines()],
        "",
        "  Rollback:",
        *[f"    {line}" for line in rollback_outcome.strip().splitlines()],
        "",
        "  Recovery:",
        *[f"    {line}" for line in recovery_hint.strip().splitlines()],
    ]
    return "\n".join(lines)


# ── Base Exception ───────────────────────────────────────────────────────────


class StackGuardError(Exception):
    """Base exception for all stack-guard errors."""

    def __init__(self, message: str = "", details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Config Exceptions ────────────────────────────────────────────────────────


class ConfigError(StackGuardError):
    """Base exception for configuration-related errors."""


class ConfigFileNotFoundError(ConfigError):
    """Raised when a configuration file cannot be found at the specified path."""


class ConfigValidationError(ConfigError):
    """Raised when configuration values fail validation."""


# ── Snapshot Exceptions ──────────────────────────────────────────────────────


class SnapshotError(StackGuardError):
    """Base exception for snapshot store errors."""


class SnapshotCreationError(SnapshotError):
    """Raised when a snapshot cannot be written because of an I/O error."""


class SnapshotNotFoundError(SnapshotError):
    """Raised when no snapshot exists for a given snapshot_id."""


class SnapshotCorruptError(SnapshotError):
    """Raised when snapshot content no longer matches its manifest."""


class RestoreConflictError(SnapshotError):
    """
    Raised when a restore target exists, differs, and force was not set.

    ``conflicts`` lists the target paths that were left untouched.
    """

    def __init__(
        self,
        message: str = "Restore target differs from snapshot",
        conflicts: list[str] | None = None,
        details: dict | None = None,
    ) -> None:
        self.conflicts = list(conflicts or [])
        super().__init__(message, details)


# ── Lifecycle Exceptions ─────────────────────────────────────────────────────


class LifecycleError(StackGuardError):
    """Base exception for service lifecycle errors."""


class OperationInProgress(LifecycleError):
    """Raised when a transition or safe operation is already in flight."""


class InvalidTransitionError(LifecycleError):
    """Raised when a transition is not defined for the current service state."""

    def __init__(
        self,
        message: str = "Invalid transition",
        state: str = "",
        transition: str = "",
        details: dict | None = None,
    ) -> None:
        self.state = state
        self.transition = transition
        super().__init__(message, details)


class HealthCheckTimeout(LifecycleError):
    """Raised when services do not report healthy before the deadline."""

    def __init__(
        self,
        message: str = "Health check timed out",
        timeout: float = 0.0,
        unhealthy: list[str] | None = None,
        details: dict | None = None,
    ) -> None:
        self.timeout = timeout
        self.unhealthy = list(unhealthy or [])
        super().__init__(message, details)


class BackendError(LifecycleError):
    """Raised when an orchestration backend command exits non-zero."""

    def __init__(
        self,
        message: str = "Backend command failed",
        returncode: int | None = None,
        stderr: str = "",
        details: dict | None = None,
    ) -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message, details)


# ── Archive Exceptions ───────────────────────────────────────────────────────


class ArchiveError(StackGuardError):
    """Base exception for backup archive errors."""


class ArchiveCorruptError(ArchiveError):
    """Raised when an archive fails validation."""

    def __init__(
        self,
        message: str = "Archive failed validation",
        reasons: list[str] | None = None,
        details: dict | None = None,
    ) -> None:
        self.reasons = list(reasons or [])
        super().__init__(message, details)


class ArchiveWriteError(ArchiveError):
    """Raised when an archive cannot be staged, compressed, or published."""


class ArchiveNotFoundError(ArchiveError):
    """Raised when no archive matches the requested path or scope."""


# ── Safe Operation Exceptions ────────────────────────────────────────────────


class OperationFailedError(StackGuardError):
    """
    Raised when a safe operation failed and its rollback completed.

    Structured fields:
    - ``what_attempted``: the operation name and original error
    - ``rollback_outcome``: summary of the unwind and snapshot restore
    - ``recovery_hint``: path to the retained snapshot for manual recovery
    """

    title = "OperationFailedError"

    def __init__(
        self,
        message: str = "Operation failed",
        operation: str = "",
        original_error: BaseException | None = None,
        rollback_outcome: str = "",
        snapshot_path: str | None = None,
        details: dict | None = None,
        what_attempted: str = "",
        recovery_hint: str = "",
    ) -> None:
        self.operation = operation
        self.original_error = original_error
        self.snapshot_path = snapshot_path
        self.what_attempted = what_attempted or (
            f'Safe operation "{operation}" failed: {original_error}'
        )
        self.rollback_outcome = rollback_outcome or "No rollback was attempted."
        self.recovery_hint = recovery_hint or (
            f"Snapshot retained at: {snapshot_path}"
            if snapshot_path
            else "No snapshot was captured for this operation."
        )
        super().__init__(message, details)

    def __str__(self) -> str:
        return _format_structured_error(
            title=f"{self.title}: {self.args[0]}",
            what_attempted=self.what_attempted,
            rollback_outcome=self.rollback_outcome,
            recovery_hint=self.recovery_hint,
        )


class RollbackPartialFailure(OperationFailedError):
    """
    Raised when one or more compensations or the snapshot restore failed.

    This is a hard stop. The environment needs manual inspection; stack-guard
    never rolls back a failed rollback.
    """

    title = "RollbackPartialFailure"

    def __init__(
        self,
        message: str = "Rollback did not complete",
        failed_actions: list[str] | None = None,
        **kwargs,
    ) -> None:
        self.failed_actions = list(failed_actions or [])
        super().__init__(message, **kwargs)
        if not kwargs.get("recovery_hint"):
            self.recovery_hint = (
                f"{self.recovery_hint}\n"
                "Inspect the environment manually before running further "
                "operations; automatic rollback will not be retried."
            )


class OperationInterruptedError(StackGuardError):
    """
    Recorded when a previous invocation died inside a safe operation.

    Found by reconciliation through the in-flight marker; the operation
    is treated as failed and its snapshot restored.
    """
