"""stack-guard backup archives and disaster recovery."""

from stack_guard.backup.codec import ArchiveCodec, TarGzCodec
from stack_guard.backup.engine import BackupEngine
from stack_guard.backup.recovery import DisasterRecovery

__all__ = ["ArchiveCodec", "TarGzCodec", "BackupEngine", "DisasterRecovery"]
