import functools
from collections.abc import Callable
from typing import Any

from nodeharness.logging_config import get_logger
from nodeharness.utils.maybe import Maybe


def fail_gracefully[**P, R](
    logger: Any | None = None,
    event: str | None = None,
) -> Callable[[Callable[P, R]], Callable[P, Maybe[R]]]:
    """
    Turn any exception raised by the wrapped function into a logged
    warning and an empty Maybe. Used on teardown and diagnostics steps,
    which must never raise over the caller's own failure.
    """
    if logger is None:
        logger = get_logger(__name__)

    def decorator(f: Callable[P, R]):
        @functools.wraps(f)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> Maybe[R]:
            try:
                return Maybe(f(*args, **kwargs))
            except Exception as e:
                logger.warning(
                    event or f"An error occurred in {f.__name__}",
                    step=f.__name__,
                    error=str(e),
                    exc_info=True,
                )
                return Maybe[R](None)

        return wrapper
    return decorator
