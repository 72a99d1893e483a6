"""
Disaster Recovery
~~~~~~~~~~~~~~~~~

Rebuilds the environment from an archive when the primary environment is
missing or broken. Unlike a routine rollback this brings the whole stack
down, restores, and brings it back up, then writes a report.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from stack_guard.backends.base import OrchestrationBackend
from stack_guard.backup.engine import BackupEngine
from stack_guard.core.models import RecoveryReport
from stack_guard.core.states import BackupType, EnvironmentState, RecoveryMode
from stack_guard.exceptions import (
    ArchiveCorruptError,
    ArchiveNotFoundError,
    ArchiveWriteError,
    StackGuardError,
)
from stack_guard.health.probe import HealthProbe

__all__ = ["DisasterRecovery"]

logger = logging.getLogger(__name__)


class DisasterRecovery:
    """
    Guided whole-environment restore.

    Args:
        engine: Backup engine used to locate, validate and restore archives.
        backend: Orchestration backend used to bring services down and up.
        probe: Health probe used to assess the environment.
        reports_dir: Where recovery reports are written.
        required_files: Files whose absence means the environment is corrupted.
        emergency_backup: Take a config backup before restoring.
        wait_healthy: Called after services are brought back up; raising
            marks the recovery as failed.
    """

    def __init__(
        self,
        engine: BackupEngine,
        backend: OrchestrationBackend,
        probe: HealthProbe,
        reports_dir: str | Path,
        required_files: Iterable[str | Path] = (),
        emergency_backup: bool = True,
        wait_healthy: Callable[[], None] | None = None,
    ) -> None:
        self._engine = engine
        self._backend = backend
        self._probe = probe
        self._reports_dir = Path(reports_dir)
        self._required = [Path(p) for p in required_files]
        self._emergency_backup = emergency_backup
        self._wait_healthy = wait_healthy

    def assess(self) -> EnvironmentState:
        """Classify the live environment."""
        missing = [p for p in self._required if not p.exists()]
        if missing:
            logger.warning("Environment corrupted, missing: %s", ", ".join(map(str, missing)))
            return EnvironmentState.CORRUPTED
        results = self._probe.check_all()
        healthy = sum(1 for r in results.values() if r.healthy)
        if results and healthy == len(results):
            return EnvironmentState.HEALTHY
        if healthy:
            return EnvironmentState.DEGRADED
        return EnvironmentState.FAILED

    def _select(
        self, mode: RecoveryMode, source: str | Path | None, scope: BackupType
    ) -> Path:
        if mode == RecoveryMode.MANUAL:
            if not source:
                raise ArchiveNotFoundError("Manual recovery requires a source archive")
            path = Path(source)
            if not path.is_file():
                raise ArchiveNotFoundError(f"Archive not found: {path}")
            return path
        if source:
            return Path(source)
        path = self._engine.latest_valid(scope)
        if path is None:
            raise ArchiveNotFoundError(
                f"No valid archive covering {scope.value} in {self._engine.backup_dir}"
            )
        return path

    def run(
        self,
        mode: RecoveryMode | str = RecoveryMode.AUTO,
        source: str | Path | None = None,
        scope: BackupType | str = BackupType.FULL,
    ) -> RecoveryReport:
        """
        Recover the environment from an archive.

        Args:
            mode: ``auto`` picks the newest valid archive covering ``scope``;
                ``manual`` requires ``source``.
            source: Archive to restore from.
            scope: Backup type to restore.

        Returns:
            The recovery report; it is also written to the reports dir.

        Raises:
            ArchiveNotFoundError: No usable archive.
            ArchiveCorruptError: The chosen archive failed validation.
            StackGuardError: Any later step failed; the report is still written.
        """
        mode = RecoveryMode(mode)
        scope = BackupType(scope)
        report = RecoveryReport(mode=mode.value, environment_state=self.assess())
        report.messages.append(f"Environment assessed as {report.environment_state.value}")
        logger.warning(
            "Disaster recovery (%s) started; environment is %s",
            mode.value,
            report.environment_state.value,
        )

        try:
            report.archive = self._select(mode, source, scope)
            report.messages.append(f"Selected archive {report.archive.name}")
            valid, reasons = self._engine.validate(report.archive)
            if not valid:
                raise ArchiveCorruptError(
                    f"Archive {report.archive.name} failed validation: {'; '.join(reasons)}",
                    reasons=reasons,
                )
            report.messages.append("Archive validated")

            self._take_emergency_backup(report)

            self._backend.down()
            report.messages.append("Services brought down")
            self._engine.restore(report.archive, scope=scope)
            report.messages.append(f"Restored {scope.value} content")
            self._backend.up()
            report.services_restarted = True
            report.messages.append("Services brought up")
            if self._wait_healthy is not None:
                self._wait_healthy()
                report.messages.append("Services healthy")
            report.success = True
        except StackGuardError as exc:
            report.messages.append(f"FAILED: {exc}")
            logger.error("Disaster recovery failed: %s", exc)
            raise
        finally:
            self._write_report(report)

        logger.info("Disaster recovery completed from %s", report.archive)
        return report

    def _take_emergency_backup(self, report: RecoveryReport) -> None:
        if not self._emergency_backup:
            return
        if report.environment_state == EnvironmentState.CORRUPTED:
            report.messages.append("Environment too corrupted for an emergency backup")
            logger.warning("Environment too corrupted for an emergency backup")
            return
        name = f"emergency_state_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S')}"
        try:
            report.emergency_backup = self._engine.create(BackupType.CONFIG, name=name)
            report.messages.append(f"Emergency backup {report.emergency_backup.name}")
        except ArchiveWriteError as exc:
            report.messages.append(f"Emergency backup failed: {exc}")
            logger.warning("Could not create emergency backup: %s", exc)

    def _write_report(self, report: RecoveryReport) -> None:
        stamp = report.started_at.strftime("%Y%m%d_%H%M%S")
        path = self._reports_dir / f"recovery_report_{stamp}.txt"
        try:
            self._reports_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(report.render(), encoding="utf-8")
        except OSError as exc:
            logger.error("Could not write recovery report %s: %s", path, exc)
            return
        report.report_path = path
        logger.info("Recovery report written to %s", path)