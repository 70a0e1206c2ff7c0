from __future__ import annotations

from dataclasses import dataclass

from nodeharness.logging_config import get_logger

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class AssertionOutcome:
    passed: bool
    message: str | None = None

    def __bool__(self) -> bool:
        return self.passed


def assert_eq(expected: object, actual: object, msg: str = "") -> AssertionOutcome:
    """
    Compare two values and report the outcome instead of raising.

    On a mismatch with a non-empty `msg`, the outcome carries
    "<expected> == <actual> :: <msg>" and the mismatch is logged.
    """
    if expected == actual:
        return AssertionOutcome(passed=True)

    if not msg:
        return AssertionOutcome(passed=False)

    message = f"{expected} == {actual} :: {msg}"
    log.error("Assertion failed", detail=message)
    return AssertionOutcome(passed=False, message=message)
