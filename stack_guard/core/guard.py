"""
StackGuard Facade
~~~~~~~~~~~~~~~~

The primary entry point. Assembles the snapshot store, executor,
lifecycle controller and backup engine from configuration and exposes
one method per command-line verb.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from stack_guard.backends.base import OrchestrationBackend
from stack_guard.backup.codec import ArchiveCodec
from stack_guard.backup.engine import BackupEngine
from stack_guard.backup.recovery import DisasterRecovery
from stack_guard.backup.runtime import RuntimeData
from stack_guard.config.defaults import DEFAULT_CONFIG
from stack_guard.config.loader import load_config, load_config_from_dict
from stack_guard.config.schema import StackGuardConfig
from stack_guard.core.context import RunContext
from stack_guard.core.executor import SafeOperationExecutor
from stack_guard.core.lock import OperationLock
from stack_guard.core.models import (
    ArchiveSummary,
    AuditEntry,
    AuditFilter,
    OperationMetrics,
    OperationResult,
    RecoveryReport,
    SnapshotSummary,
    StackStatus,
)
from stack_guard.core.states import BackupType, RecoveryMode, ServiceState
from stack_guard.exceptions import ArchiveNotFoundError, BackendError
from stack_guard.health.probe import ComposeHealthProbe, HealthProbe
from stack_guard.lifecycle.controller import ServiceLifecycleController
from stack_guard.lifecycle.versions import VersionStore
from stack_guard.observability.audit_log import AuditLog
from stack_guard.observability.exporters.jsonl_exporter import JsonlFileExporter
from stack_guard.observability.exporters.stdout_exporter import StdoutExporter
from stack_guard.rollback.snapshot_store import SnapshotStore

__all__ = ["StackGuard", "PRE_UPDATE_PREFIX"]

logger = logging.getLogger(__name__)

PRE_UPDATE_PREFIX = "pre_update_"


class StackGuard:
    """
    Entry point for every stack-guard operation.

    Args:
        config: Validated configuration; defaults if None.
        backend: Orchestration backend; Docker Compose if None.
        probe: Health probe; reads backend container status if None.
        codec: Archive codec; ``.tar.gz`` if None.
        context: A prepared run context. Overrides ``backend`` and ``codec``.
    """

    def __init__(
        self,
        config: StackGuardConfig | None = None,
        backend: OrchestrationBackend | None = None,
        probe: HealthProbe | None = None,
        codec: ArchiveCodec | None = None,
        context: RunContext | None = None,
    ) -> None:
        self._config = config or (context.config if context else StackGuardConfig())
        self._ctx = context or RunContext.build(self._config, backend=backend, codec=codec)
        cfg = self._config
        services = cfg.services.names

        # ── Subsystems ────────────────────────────────────────────
        self._audit_log = AuditLog(max_entries=cfg.observability.audit_log_max_entries)
        self._store = SnapshotStore(cfg.snapshot_dir)
        self._lock = OperationLock(cfg.state_dir, hard_timeout=cfg.timeouts.lock)
        self._probe = probe or ComposeHealthProbe(self._ctx.backend, services)
        self._versions = VersionStore(
            cfg.env_file, services, cfg.services.version_tag_template
        )
        self._controller: ServiceLifecycleController | None = None
        self._executor = SafeOperationExecutor(
            store=self._store,
            lock=self._lock,
            audit_log=self._audit_log,
            protected_paths=cfg.protected_paths(),
            retention=cfg.snapshot.retention,
            include_system_info=cfg.snapshot.include_system_info,
            state_provider=lambda: (
                self._controller.last_known_state if self._controller else None
            ),
            metadata_provider=self._runtime_metadata,
        )
        self._controller = ServiceLifecycleController(
            backend=self._ctx.backend,
            probe=self._probe,
            executor=self._executor,
            versions=self._versions,
            start_timeout=cfg.timeouts.start,
            stop_timeout=cfg.timeouts.stop,
            update_timeout=cfg.timeouts.update,
            poll_interval=cfg.health.interval,
            sleep=self._ctx.sleep,
            clock=self._ctx.monotonic,
        )
        self._engine = BackupEngine(
            base_dir=cfg.base_dir,
            backup_dir=cfg.backup_dir,
            type_paths={
                BackupType.CONFIG: cfg.backup.config_paths,
                BackupType.SSL: cfg.backup.ssl_paths,
                BackupType.DATA: cfg.backup.data_paths,
            },
            executor=self._executor,
            codec=self._ctx.codec,
            retention=cfg.backup.retention,
            history_log=cfg.backup.history_log,
            exclude=[cfg.state_dir],
            tool_version=self.version,
            runtime=RuntimeData(
                self._ctx.backend,
                cfg.env_file,
                volumes=cfg.backup.volumes,
                database_service=cfg.backup.database_service,
                user_var=cfg.backup.database_user_var,
                name_var=cfg.backup.database_name_var,
            ),
        )
        self._recovery = DisasterRecovery(
            engine=self._engine,
            backend=self._ctx.backend,
            probe=self._probe,
            reports_dir=cfg.reports_dir,
            required_files=[cfg.env_file, cfg.compose_file],
            emergency_backup=cfg.recovery.emergency_backup,
            wait_healthy=lambda: self.controller.wait_healthy(cfg.timeouts.start),
        )

        self._setup_exporters()

    # ── Properties ─────────────────────────────────────────────────

    @property
    def version(self) -> str:
        """Return the stack-guard version string."""
        from stack_guard import __version__

        return __version__

    @property
    def config(self) -> StackGuardConfig:
        return self._config

    @property
    def context(self) -> RunContext:
        return self._ctx

    @property
    def controller(self) -> ServiceLifecycleController:
        assert self._controller is not None
        return self._controller

    @property
    def executor(self) -> SafeOperationExecutor:
        return self._executor

    @property
    def engine(self) -> BackupEngine:
        return self._engine

    @property
    def snapshots(self) -> SnapshotStore:
        return self._store

    # ── Class Methods (constructors) ──────────────────────────────

    @classmethod
    def from_config(cls, path: str, **kwargs: Any) -> StackGuard:
        """
        Create a StackGuard instance from a YAML config file.

        Args:
            path: Path to stack-guard.yaml.
            **kwargs: Collaborators passed to the constructor.
        """
        return cls(config=load_config(path), **kwargs)

    @classmethod
    def default(cls, **kwargs: Any) -> StackGuard:
        """Create a StackGuard instance for the current directory with defaults."""
        return cls(config=load_config_from_dict(DEFAULT_CONFIG), **kwargs)

    def _setup_exporters(self) -> None:
        """Configure audit log exporters from config."""
        for exporter_name in self._config.observability.exporters:
            if exporter_name == "stdout":
                self._audit_log.add_exporter(StdoutExporter())
            elif exporter_name == "jsonl":
                exporter = JsonlFileExporter(self._config.audit_file)
                self._audit_log.load(exporter.entries())
                self._audit_log.add_exporter(exporter)

    def _runtime_metadata(self) -> dict[str, str]:
        """Running services and volumes at snapshot time."""
        try:
            return {
                "running_services": ",".join(self._ctx.backend.running()),
                "volumes": ",".join(self._ctx.backend.volumes()),
            }
        except BackendError as exc:
            logger.warning("Snapshot without runtime metadata: %s", exc)
            return {}

    def _ensure_reconciled(self) -> None:
        if self._ctx.reconciled:
            return
        result = self._executor.reconcile()
        self._ctx.reconciled = True
        if result is not None:
            logger.warning(
                "Reconciled interrupted operation %s (restored: %s)",
                result.name,
                result.restored,
            )

    # ── Verbs: backups ─────────────────────────────────────────────

    def backup(
        self,
        type: BackupType | str = BackupType.FULL,
        directory: str | Path | None = None,
        name: str | None = None,
    ) -> Path:
        """Create a backup archive and prune old ones."""
        archive = self._engine.create(type, directory, name)
        self._engine.prune(directory)
        return archive

    def restore(
        self,
        archive: str | Path,
        type: BackupType | str | None = None,
        verify_only: bool = False,
    ) -> bool:
        """Validate and (unless ``verify_only``) restore an archive."""
        if not verify_only:
            self._ensure_reconciled()
        return self._engine.restore(archive, scope=type, verify_only=verify_only)

    def list_backups(self, directory: str | Path | None = None) -> list[ArchiveSummary]:
        return self._engine.list(directory)

    def disaster_recovery(
        self,
        mode: RecoveryMode | str = RecoveryMode.AUTO,
        source: str | Path | None = None,
        scope: BackupType | str = BackupType.FULL,
    ) -> RecoveryReport:
        """Rebuild the environment from an archive; see :class:`DisasterRecovery`."""
        self._ensure_reconciled()
        try:
            return self._recovery.run(mode, source, scope)
        finally:
            self.controller.refresh_state()

    # ── Verbs: lifecycle ───────────────────────────────────────────

    def start(self, timeout: float | None = None) -> OperationResult:
        self._ensure_reconciled()
        result = self.controller.start(timeout)
        result.raise_for_failure()
        return result

    def stop(self, timeout: float | None = None) -> OperationResult:
        self._ensure_reconciled()
        result = self.controller.stop(timeout)
        result.raise_for_failure()
        return result

    def restart(
        self, timeout: float | None = None, services: Sequence[str] | None = None
    ) -> OperationResult:
        """Restart ``services`` in place, or the whole group; a stopped group is started."""
        self._ensure_reconciled()
        if self.controller.refresh_state() == ServiceState.STOPPED:
            result = self.controller.start(timeout)
        else:
            result = self.controller.restart(timeout, services)
        result.raise_for_failure()
        return result

    def update(
        self,
        version: str | None = None,
        services: Sequence[str] | None = None,
        force: bool = False,
        no_backup: bool = False,
        timeout: float | None = None,
    ) -> OperationResult:
        """
        Update services to ``version`` with a pre-update backup.

        A no-op when every targeted service already runs ``version``,
        unless ``force`` is set.

        Raises:
            OperationFailedError: The update failed and was rolled back.
            RollbackPartialFailure: The update failed and rollback did not complete.
        """
        self._ensure_reconciled()
        version = version or "latest"
        targets = list(services) if services else self._config.services.names
        current = self._versions.current_versions()
        if not force and all(current.get(s) == version for s in targets):
            logger.info("Already on %s; nothing to update", version)
            return OperationResult(name="update", success=True, output=current)

        if not no_backup and self._config.backup.pre_update_backup:
            name = self._engine.unique_name(PRE_UPDATE_PREFIX)
            archive = self._engine.create(BackupType.FULL, name=name)
            logger.info("Pre-update backup: %s", archive)

        result = self.controller.update(version, timeout, targets)
        result.raise_for_failure()
        return result

    def rollback(self, archive: str | Path | None = None) -> OperationResult:
        """
        Restore ``archive`` (default: the newest pre-update backup) and
        restart services on the restored configuration.

        Raises:
            ArchiveNotFoundError: No archive given and no pre-update backup exists.
        """
        self._ensure_reconciled()
        if archive is None:
            archive = self._engine.latest_valid(BackupType.FULL, prefix=PRE_UPDATE_PREFIX)
            if archive is None:
                raise ArchiveNotFoundError(
                    f"No {PRE_UPDATE_PREFIX}* backup found in {self._engine.backup_dir}"
                )
        logger.info("Rolling back to %s", archive)
        self._engine.restore(archive)
        return self.restart()

    def status(self) -> StackStatus:
        pending = self._executor.pending()
        return StackStatus(
            state=self.controller.refresh_state(),
            health=self._probe.check_all(),
            versions=self._versions.current_versions(),
            interrupted_operation=(
                pending.get("operation", "unknown") if pending is not None else None
            ),
        )

    # ── Verbs: snapshots ───────────────────────────────────────────

    def list_snapshots(self) -> list[SnapshotSummary]:
        return self._store.list()

    def restore_snapshot(self, snapshot_id: str, force: bool = False) -> bool:
        """
        Restore an operational snapshot by ID.

        Raises:
            SnapshotNotFoundError: Unknown ID.
            RestoreConflictError: Targets differ and ``force`` is not set.
        """
        with self._lock:
            return self._store.restore(snapshot_id, force=force, strict=True)

    def reconcile(self) -> OperationResult | None:
        """Reconcile an operation interrupted in a previous invocation."""
        result = self._executor.reconcile()
        self._ctx.reconciled = True
        return result

    # ── Observability ──────────────────────────────────────────────

    def add_exporter(self, exporter: Any) -> None:
        """
        Add an audit log exporter.

        Args:
            exporter: An exporter implementing export(AuditEntry).
        """
        self._audit_log.add_exporter(exporter)

    def get_audit_log(self, filters: AuditFilter | None = None) -> list[AuditEntry]:
        return self._audit_log.query(filters)

    def get_metrics(self) -> OperationMetrics:
        return self._audit_log.get_metrics()

    def __repr__(self) -> str:
        return f"StackGuard(base_dir={str(self._config.base_dir)!r}, version={self.version!r})"
