"""
Rollback Registry
~~~~~~~~~~~~~~~~~

Per-operation ledger of compensating actions. Actions are deferred when
registered and executed in reverse registration order on unwind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from stack_guard.core.models import ExecutionReport, FailedAction, RollbackAction

__all__ = ["RollbackRegistry"]

logger = logging.getLogger(__name__)


class RollbackRegistry:
    """
    LIFO ledger of compensating actions scoped to one safe operation.

    A failing action never stops the unwind; its error is recorded in the
    returned :class:`ExecutionReport` and the next action runs.
    """

    def __init__(self) -> None:
        self._actions: list[RollbackAction] = []

    def register(self, description: str, action: Callable[[], Any]) -> None:
        """
        Append a compensating action. It is not executed now.

        Args:
            description: Human-readable label used in logs and reports.
            action: Zero-argument callable that undoes one step.
        """
        self._actions.append(
            RollbackAction(description=description, action=action, order=len(self._actions))
        )
        logger.debug("Registered compensation #%d: %s", len(self._actions), description)

    def unwind(self) -> ExecutionReport:
        """
        Execute every registered action, newest first, then empty the ledger.

        Returns:
            Counts of attempted and succeeded actions plus each failure.
        """
        report = ExecutionReport()
        actions, self._actions = self._actions, []
        for entry in reversed(actions):
            report.attempted += 1
            try:
                entry.action()
            except Exception as exc:
                logger.error("Compensation failed: %s (%s)", entry.description, exc)
                report.failed.append(
                    FailedAction(description=entry.description, error=str(exc))
                )
            else:
                report.succeeded += 1
                logger.info("Compensation applied: %s", entry.description)
        return report

    def clear(self) -> None:
        """Discard all registered actions without running them."""
        self._actions.clear()

    @property
    def descriptions(self) -> list[str]:
        """Descriptions in registration order."""
        return [a.description for a in self._actions]

    def __len__(self) -> int:
        return len(self._actions)
