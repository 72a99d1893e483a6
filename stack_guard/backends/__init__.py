"""stack-guard orchestration backends."""

from stack_guard.backends.base import OrchestrationBackend, ProcessResult
from stack_guard.backends.compose import DockerComposeBackend

__all__ = [
    "OrchestrationBackend",
    "ProcessResult",
    "DockerComposeBackend",
]
