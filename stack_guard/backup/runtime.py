"""
Runtime Data
~~~~~~~~~~~~

Data that lives inside the container runtime rather than the project
tree: the project's named volumes and a logical dump of its database.
``data`` and ``full`` archives carry it under ``_runtime/``::

    _runtime/volumes/<volume>.tar.gz
    _runtime/database/dump.sql

Both are plain manifest entries, so archive validation covers them like
any other file.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from stack_guard.backends.base import OrchestrationBackend
from stack_guard.lifecycle.versions import read_env
from stack_guard.rollback.registry import RollbackRegistry

__all__ = ["RuntimeData", "RUNTIME_DIR", "VOLUMES_DIR", "DATABASE_DUMP", "is_runtime_path"]

logger = logging.getLogger(__name__)

RUNTIME_DIR = "_runtime"
VOLUMES_DIR = f"{RUNTIME_DIR}/volumes"
DATABASE_DUMP = f"{RUNTIME_DIR}/database/dump.sql"
_VOLUME_SUFFIX = ".tar.gz"


def is_runtime_path(rel: str) -> bool:
    return rel == RUNTIME_DIR or rel.startswith(RUNTIME_DIR + "/")


class RuntimeData:
    """
    Exports and re-imports volumes and the database dump through the backend.

    Args:
        backend: Container runtime the project runs on.
        env_file: Read for the database user and name.
        volumes: Capture the project's named volumes.
        database_service: Service running PostgreSQL; no dump if None.
        user_var: Environment variable holding the database user.
        name_var: Environment variable holding the database name.

    Backend failures propagate as :class:`BackendError`.
    """

    def __init__(
        self,
        backend: OrchestrationBackend,
        env_file: str | Path,
        volumes: bool = True,
        database_service: str | None = "database",
        user_var: str = "POSTGRES_USER",
        name_var: str = "POSTGRES_DB",
    ) -> None:
        self._backend = backend
        self._env_file = Path(env_file)
        self._volumes = volumes
        self._database_service = database_service
        self._user_var = user_var
        self._name_var = name_var

    def _credentials(self) -> tuple[str, str]:
        env = read_env(self._env_file)
        return env.get(self._user_var, "postgres"), env.get(self._name_var, "postgres")

    def _database_running(self) -> bool:
        if not self._database_service:
            return False
        if self._database_service in self._backend.running():
            return True
        logger.warning("Database service %s is not running", self._database_service)
        return False

    def _dump(self) -> str:
        user, name = self._credentials()
        result = self._backend.exec(
            self._database_service, ["pg_dump", "-U", user, "-d", name, "--clean", "--if-exists"]
        )
        return result.stdout

    def _load(self, sql: str) -> None:
        user, name = self._credentials()
        self._backend.exec(
            self._database_service,
            ["psql", "-U", user, "-d", name, "-v", "ON_ERROR_STOP=1"],
            input=sql,
        )

    # ── Export ───────────────────────────────────────────────────────────

    def export(self, root: Path) -> list[str]:
        """
        Write volume archives and the database dump under ``root``.

        Returns:
            Paths written, relative to ``root``.
        """
        written: list[str] = []
        if self._volumes:
            for volume in self._backend.volumes():
                rel = f"{VOLUMES_DIR}/{volume}{_VOLUME_SUFFIX}"
                logger.debug("Exporting volume %s", volume)
                self._backend.export_volume(volume, root / rel)
                written.append(rel)
        if self._database_running():
            target = root / DATABASE_DUMP
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(self._dump(), encoding="utf-8")
            written.append(DATABASE_DUMP)
        else:
            logger.warning("No database dump in this archive")
        logger.info("Captured %d runtime item(s)", len(written))
        return written

    # ── Restore ──────────────────────────────────────────────────────────

    def restore(
        self,
        plan: Mapping[str, Path],
        scratch: Path,
        registry: RollbackRegistry | None = None,
    ) -> None:
        """
        Re-import the runtime entries of an extracted archive.

        Volumes can only be replaced while nothing runs, and the dump can
        only be loaded into a running database. A running stack therefore
        gets the dump and a stopped one gets the volumes; the other half
        is skipped with a warning.

        With a ``registry``, the current contents are saved to ``scratch``
        first and a compensation puts them back.

        Args:
            plan: Archive-relative path -> extracted file.
            scratch: Directory for the pre-restore copies.
            registry: Receives one compensation per replaced item.
        """
        volumes = {
            rel.removeprefix(VOLUMES_DIR + "/").removesuffix(_VOLUME_SUFFIX): source
            for rel, source in plan.items()
            if rel.startswith(VOLUMES_DIR + "/")
        }
        dump = plan.get(DATABASE_DUMP)
        if self._backend.running():
            if volumes:
                logger.warning(
                    "Stack is running; not replacing volumes: %s", ", ".join(sorted(volumes))
                )
            if dump is not None:
                self._restore_database(dump, scratch, registry)
            return
        if dump is not None:
            logger.warning("Database is not running; relying on volumes instead of the dump")
        self._restore_volumes(volumes, scratch, registry)

    def _restore_volumes(
        self, volumes: Mapping[str, Path], scratch: Path, registry: RollbackRegistry | None
    ) -> None:
        existing = set(self._backend.volumes()) if registry is not None else set()
        for volume, source in sorted(volumes.items()):
            if registry is not None and volume in existing:
                saved = scratch / f"{volume}{_VOLUME_SUFFIX}"
                self._backend.export_volume(volume, saved)
                registry.register(
                    f"re-import volume {volume}",
                    lambda v=volume, s=saved: self._backend.import_volume(v, s),
                )
            logger.info("Importing volume %s", volume)
            self._backend.import_volume(volume, source)

    def _restore_database(
        self, source: Path, scratch: Path, registry: RollbackRegistry | None
    ) -> None:
        if not self._database_running():
            return
        if registry is not None:
            saved = scratch / "pre-restore-dump.sql"
            saved.parent.mkdir(parents=True, exist_ok=True)
            saved.write_text(self._dump(), encoding="utf-8")
            registry.register(
                "reload pre-restore database dump",
                lambda: self._load(saved.read_text(encoding="utf-8")),
            )
        logger.info("Loading database dump into %s", self._database_service)
        self._load(source.read_text(encoding="utf-8"))
