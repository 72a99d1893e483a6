"""
Audit Log
~~~~~~~~~

Structured audit log that records every safe operation.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from stack_guard.core.models import AuditEntry, AuditFilter, OperationMetrics

__all__ = ["AuditLog"]

logger = logging.getLogger(__name__)


class AuditLog:
    """
    In-memory structured audit log with filtering and export support.

    Every safe operation gets an entry here, whether it succeeded or
    not. Entries are forwarded to configured exporters.
    """

    def __init__(self, max_entries: int = 10000) -> None:
        self._entries: list[AuditEntry] = []
        self._max_entries = max_entries
        self._lock = threading.RLock()
        self._exporters: list[Any] = []

    def add_exporter(self, exporter: Any) -> None:
        """Add an exporter to receive audit entries."""
        self._exporters.append(exporter)

    def write(self, entry: AuditEntry) -> None:
        """
        Write an entry to the audit log and forward to exporters.

        Args:
            entry: The audit entry to record.
        """
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                self._entries = self._entries[-self._max_entries :]

        for exporter in self._exporters:
            try:
                exporter.export(entry)
            except Exception as exc:
                logger.error(
                    "Exporter %s failed: %s",
                    type(exporter).__name__,
                    exc,
                )

    def load(self, entries: Iterable[AuditEntry]) -> None:
        """Add entries recorded by an earlier invocation without re-exporting them."""
        with self._lock:
            self._entries.extend(entries)
            if len(self._entries) > self._max_entries:
                self._entries = self._entries[-self._max_entries :]

    def query(self, filters: AuditFilter | None = None) -> list[AuditEntry]:
        """
        Query the audit log with optional filters.

        Args:
            filters: Optional filter criteria.

        Returns:
            Matching audit entries, oldest first.
        """
        if filters is None:
            with self._lock:
                return list(self._entries)

        results: list[AuditEntry] = []
        with self._lock:
            for entry in self._entries:
                if filters.operation and entry.operation != filters.operation:
                    continue
                if filters.success is not None and entry.success != filters.success:
                    continue
                if filters.from_time and entry.timestamp < filters.from_time:
                    continue
                if filters.to_time and entry.timestamp > filters.to_time:
                    continue
                results.append(entry)

                if len(results) >= filters.limit:
                    break

        return results

    def get_metrics(self) -> OperationMetrics:
        """Compute aggregate metrics from the audit log."""
        metrics = OperationMetrics()

        with self._lock:
            entries = list(self._entries)

        if not entries:
            return metrics

        metrics.total_operations = len(entries)
        total_duration = 0

        for entry in entries:
            total_duration += entry.duration_ms
            if entry.success:
                metrics.succeeded += 1
            else:
                metrics.failed += 1
            if entry.rollback_attempted:
                metrics.rollbacks += 1
                if not entry.rollback_complete:
                    metrics.rollback_failures += 1
            metrics.operations_by_name[entry.operation] = (
                metrics.operations_by_name.get(entry.operation, 0) + 1
            )

        metrics.avg_duration_ms = total_duration / len(entries)
        return metrics

    def clear(self) -> None:
        """Clear all audit entries."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
