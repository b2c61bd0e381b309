"""
Bounded polling used while waiting on the control plane.
"""
import logging
import time
from typing import Callable, Optional, TypeVar

from cluster_utils.errors import PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_INTERVAL_SECONDS = 1.0


def poll_until(check: Callable[[], Optional[T]],
               timeout: float = DEFAULT_TIMEOUT_SECONDS,
               interval: float = DEFAULT_INTERVAL_SECONDS,
               description: str = "condition",
               sleep: Callable[[float], None] = time.sleep,
               clock: Callable[[], float] = time.monotonic) -> T:
    """
    Calls `check` until it returns something other than None.

    `check` is always attempted at least once. Exceptions raised by
    `check` propagate unchanged.

    Args:
        check: Callable returning None while the condition is not met yet.
        timeout (float): Seconds to keep polling.
        interval (float): Seconds to sleep between attempts.
        description (str): Used in log lines and the timeout message.
        sleep: Sleep function, injectable for tests.
        clock: Monotonic clock, injectable for tests.

    Returns:
        The first non-None value returned by `check`.

    Raises:
        PollTimeoutError: If the deadline passes without a result.
    """
    if timeout < 0 or interval <= 0:
        raise ValueError("timeout must be >= 0 and interval must be > 0")

    deadline = clock() + timeout
    attempts = 0
    while True:
        attempts += 1
        result = check()
        if result is not None:
            logger.info(f"{description}: ready after {attempts} attempt(s)")
            return result
        if clock() >= deadline:
            break
        logger.debug(f"{description}: not ready (attempt {attempts}), retrying in {interval}s")
        sleep(interval)

    raise PollTimeoutError(
        f"Timed out waiting for {description} after {timeout:g}s ({attempts} attempts)."
    )
