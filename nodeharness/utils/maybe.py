from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from nodeharness.logging_config import get_logger

log = get_logger(__name__)


class Maybe[T]:
    """
    A value that may be absent. Used wherever "not there yet" is an
    expected answer (token files, output lines, a click context) rather
    than an error.
    """

    def __init__(self, v: T | None):
        self._v: T | None = v

    # ---------------
    # -- Accessors --
    # ---------------
    def map[U](self, f: Callable[[T], U | None]) -> Maybe[U]:
        """
        Apply `f` to the contained value; an empty Maybe stays empty
        and `f` is never called.
        """
        if self._v is None:
            return Maybe[U](None)

        return Maybe(f(self._v))

    def tap(self, f: Callable[[T], Any]) -> Maybe[T]:
        # side effects only, the result of `f` is discarded
        self.map(f)
        return self

    # ----------------
    # -- Unwrappers --
    # ----------------
    def expect(self, msg: str | Exception = '') -> T:
        if self._v is None:
            if isinstance(msg, Exception):
                raise msg

            raise Exception(msg)

        return self._v

    def unwrap(self) -> T | None:
        return self._v

    def is_none(self) -> bool:
        return self._v is None

    def is_some(self) -> bool:
        return self._v is not None

    # ------------------
    # -- Constructors --
    # ------------------
    @staticmethod
    def from_try[U](
        f: Callable[[], U],
        e: type[Exception] | tuple[type[Exception], ...] = Exception,
    ) -> Maybe[U]:
        """Call `f`, turning the listed exceptions into an empty Maybe."""
        try:
            return Maybe(f())
        except e as exc:
            log.debug("Treating failed call as absent value", call=getattr(f, "__name__", repr(f)), error=str(exc))
            return Maybe[U](None)

    @staticmethod
    def find[U](pred: Callable[[U], bool], items: Iterable[U]) -> Maybe[U]:
        """First item matching `pred`, if any."""
        return Maybe(next((item for item in items if pred(item)), None))
