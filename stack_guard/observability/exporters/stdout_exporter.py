"""
Stdout Exporter
~~~~~~~~~~~~~~~

Prints one line per safe operation, for operators watching a terminal or
a journal. ``as_json=True`` switches to JSON lines for piping.
"""

from __future__ import annotations

import json
import sys
from typing import TextIO

from stack_guard.core.models import AuditEntry

__all__ = ["StdoutExporter"]


class StdoutExporter:
    """
    Writes a summary line per audit entry to a stream.

    Example::

        2026-03-01T12:00:00+00:00 update FAILED (rolled back) 1204ms snap_...: <error>
    """

    def __init__(self, stream: TextIO | None = None, as_json: bool = False) -> None:
        self._stream = stream or sys.stdout
        self._json = as_json

    def export(self, entry: AuditEntry) -> None:
        if self._json:
            line = json.dumps(entry.to_dict(), default=str)
        else:
            line = self.format(entry)
        self._stream.write(line + "\n")
        self._stream.flush()

    @staticmethod
    def format(entry: AuditEntry) -> str:
        if entry.success:
            outcome = "ok"
        elif not entry.rollback_attempted:
            outcome = "FAILED"
        elif entry.rollback_complete:
            outcome = "FAILED (rolled back)"
        else:
            outcome = "FAILED (ROLLBACK INCOMPLETE)"
        parts = [entry.timestamp.isoformat(timespec="seconds"), entry.operation, outcome]
        parts.append(f"{entry.duration_ms}ms")
        if entry.snapshot_id:
            parts.append(entry.snapshot_id)
        line = " ".join(parts)
        if entry.error:
            line += f": {entry.error.splitlines()[0]}"
        return line
