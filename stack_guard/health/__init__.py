"""stack-guard health checks."""

from stack_guard.health.probe import ComposeHealthProbe, HealthProbe

__all__ = ["HealthProbe", "ComposeHealthProbe"]
