"""
Run Context
~~~~~~~~~~~

Everything one invocation needs, built once and passed by reference to
the components that use it. Nothing here is process-global.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from stack_guard.backends.base import OrchestrationBackend
from stack_guard.backends.compose import DockerComposeBackend
from stack_guard.backup.codec import ArchiveCodec, TarGzCodec
from stack_guard.config.schema import StackGuardConfig

__all__ = ["RunContext"]


@dataclass
class RunContext:
    """
    Per-invocation state and collaborators.

    Attributes:
        config: Validated configuration.
        backend: Orchestration backend.
        codec: Archive codec.
        sleep: Sleep function used by polling loops.
        monotonic: Monotonic clock used by polling loops.
        invocation_id: Random ID for correlating log lines.
        started_at: When the invocation began.
        reconciled: Whether interrupted operations were already reconciled.
    """

    config: StackGuardConfig
    backend: OrchestrationBackend
    codec: ArchiveCodec = field(default_factory=TarGzCodec)
    sleep: Callable[[float], None] = time.sleep
    monotonic: Callable[[], float] = time.monotonic
    invocation_id: str = field(default_factory=lambda: secrets.token_hex(4))
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    reconciled: bool = False

    @classmethod
    def build(
        cls,
        config: StackGuardConfig,
        backend: OrchestrationBackend | None = None,
        codec: ArchiveCodec | None = None,
        sleep: Callable[[float], None] | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> RunContext:
        """Fill in default collaborators from ``config``."""
        if backend is None:
            backend = DockerComposeBackend(
                compose_file=config.compose_file,
                env_file=config.env_file,
                project_name=config.project.project_name,
                timeout=config.timeouts.command,
            )
        return cls(
            config=config,
            backend=backend,
            codec=codec or TarGzCodec(),
            sleep=sleep or time.sleep,
            monotonic=monotonic or time.monotonic,
        )
