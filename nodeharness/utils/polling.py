"""Polling and waiting utilities."""

import time
from collections.abc import Callable


def wait_for_event(pred: Callable[[], bool], interval: float, timeout: float) -> bool:
    """
    Wait for a predicate function to return True within a timeout period.

    The predicate is checked at least once, even with a zero timeout.
    Sleeps between checks never overshoot the deadline.
    """
    deadline = time.monotonic() + timeout
    while True:
        if pred():
            return True

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False

        time.sleep(min(interval, remaining))
