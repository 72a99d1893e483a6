"""
Poll Until
~~~~~~~~~~

Single deadline/interval loop shared by health gating, graceful stop
and recovery.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

__all__ = ["poll_until"]

logger = logging.getLogger(__name__)


def poll_until(
    check: Callable[[], bool],
    timeout: float,
    interval: float = 5.0,
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Call ``check`` until it returns True or ``timeout`` seconds elapse.

    ``check`` always runs at least once, even with a zero timeout. The
    final sleep is shortened so the loop never overshoots the deadline by
    more than one ``check`` call.

    Args:
        check: Side-effect-free predicate.
        timeout: Seconds before giving up.
        interval: Seconds between attempts.
        clock: Monotonic time source (injectable for tests).
        sleep: Sleep function (injectable for tests).

    Returns:
        True if ``check`` succeeded before the deadline.
    """
    deadline = clock() + max(0.0, timeout)
    attempt = 0
    while True:
        attempt += 1
        if check():
            logger.debug("Condition met after %d attempt(s)", attempt)
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            logger.debug("Condition not met after %d attempt(s), %.1fs", attempt, timeout)
            return False
        sleep(min(interval, remaining))
