"""stack-guard service lifecycle."""

from stack_guard.lifecycle.controller import ServiceLifecycleController
from stack_guard.lifecycle.versions import VersionStore

__all__ = ["ServiceLifecycleController", "VersionStore"]
