"""
JSONL File Exporter
~~~~~~~~~~~~~~~~~~~

Appends audit entries to a JSON-lines file so the operation history
survives the process.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from stack_guard.core.models import AuditEntry

__all__ = ["JsonlFileExporter"]

logger = logging.getLogger(__name__)


class JsonlFileExporter:
    """Appends one JSON object per audit entry to ``path``."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def export(self, entry: AuditEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), default=str) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def read(self) -> list[dict]:
        """
        Return every exported record, oldest first.

        A line cut short by a crash mid-write is skipped with a warning.
        """
        if not self._path.exists():
            return []
        records = []
        with open(self._path, encoding="utf-8") as f:
            for number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError as exc:
                    logger.warning("Skipping %s line %d: %s", self._path, number, exc)
        return records

    def entries(self) -> list[AuditEntry]:
        """Every readable record as an :class:`AuditEntry`."""
        entries = []
        for record in self.read():
            try:
                entries.append(AuditEntry.from_dict(record))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed audit record in %s: %s", self._path, exc)
        return entries
