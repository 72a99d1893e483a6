"""
Operation Lock
~~~~~~~~~~~~~~

Cross-invocation mutual exclusion for one managed environment.

The lock is a file created with ``O_CREAT | O_EXCL`` that records the
holder's pid, host and acquisition time. A lock whose holder is a dead
process on this host, or which is older than the hard timeout, is broken.
"""

from __future__ import annotations

import logging
import os
import socket
import time
from pathlib import Path
from types import TracebackType

from stack_guard.core.records import dump_record, load_record
from stack_guard.exceptions import OperationInProgress

__all__ = ["OperationLock", "LOCK_NAME"]

logger = logging.getLogger(__name__)

LOCK_NAME = ".stack-guard.lock"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class OperationLock:
    """
    Non-blocking, re-entrant (per instance) lock file.

    Args:
        state_dir: Directory the lock file lives in.
        hard_timeout: Seconds after which any lock is considered stale.
    """

    def __init__(self, state_dir: str | Path, hard_timeout: float = 3600.0) -> None:
        self._path = Path(state_dir) / LOCK_NAME
        self._hard_timeout = hard_timeout
        self._depth = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._depth > 0

    def acquire(self) -> None:
        """
        Take the lock or fail immediately.

        Raises:
            OperationInProgress: If a live holder owns the lock.
        """
        if self._depth:
            self._depth += 1
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._break_if_stale():
                    holder = self._read_holder()
                    raise OperationInProgress(
                        "Another stack-guard operation is in progress "
                        f"(pid {holder.get('pid', '?')} on {holder.get('host', '?')})",
                        details={"lock": str(self._path), **holder},
                    ) from None
                continue
            try:
                os.write(
                    fd,
                    dump_record(
                        {
                            "pid": os.getpid(),
                            "host": socket.gethostname(),
                            "acquired_at": time.time(),
                        }
                    ).encode(),
                )
                os.fsync(fd)
            finally:
                os.close(fd)
            self._depth = 1
            logger.debug("Acquired operation lock %s", self._path)
            return
        raise OperationInProgress(f"Could not acquire operation lock {self._path}")

    def release(self) -> None:
        if not self._depth:
            return
        self._depth -= 1
        if self._depth:
            return
        holder = self._read_holder()
        if holder.get("pid") == str(os.getpid()):
            self._path.unlink(missing_ok=True)
            logger.debug("Released operation lock %s", self._path)
        else:
            logger.warning("Operation lock %s was taken over; not removing it", self._path)

    def _read_holder(self) -> dict[str, str]:
        try:
            return load_record(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def _break_if_stale(self) -> bool:
        try:
            age = time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            return True
        holder = self._read_holder()
        reason = None
        if age > self._hard_timeout:
            reason = f"{age:.0f}s old, exceeds hard timeout"
        elif not holder:
            reason = "unreadable"
        elif holder.get("host") == socket.gethostname():
            pid = int(holder.get("pid", "0") or 0)
            if pid <= 0 or not _pid_alive(pid):
                reason = f"owner pid {pid} is not alive"
        if reason is None:
            return False
        logger.warning("Breaking stale operation lock %s (%s)", self._path, reason)
        self._path.unlink(missing_ok=True)
        return True

    def __enter__(self) -> OperationLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
