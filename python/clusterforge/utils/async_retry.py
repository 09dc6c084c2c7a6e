"""
clusterforge/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure,
with either a fixed delay or a caller-supplied backoff schedule between attempts.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def linear_backoff(step: float) -> Callable[[int], float]:
    """Returns a schedule that waits `attempt * step` seconds after a failed attempt.

    With step=10 the waits are 10s after attempt 1, 20s after attempt 2, and so on.
    """

    def schedule(attempt_number: int) -> float:
        return attempt_number * step

    return schedule


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    backoff: Optional[Callable[[int], float]] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    log: Optional[logging.Logger] = None,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. Between attempts
    we sleep `delay` seconds, or `backoff(attempt_number)` seconds when a backoff
    schedule is given. No sleep happens after the final attempt. If `noisy` is True,
    logs warnings on each failure and an error on the final failure.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Fixed delay in seconds between attempts. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
        backoff (Callable[[int], float], optional):
            Maps the 1-based number of the attempt that just failed to a delay in
            seconds. Overrides `delay` when set.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger a retry. Anything else propagates at once.
        log (logging.Logger, optional):
            Logger for noisy output. Defaults to this module's logger.

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on exceptions.
    """
    out = log or logger

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        out.warning(
                            "Attempt %d/%d for %r failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if remaining > 1:
                        wait = (
                            backoff(attempt_number) if backoff is not None else delay
                        )
                        if noisy:
                            out.info("Waiting %.1fs before retrying", wait)
                        await asyncio.sleep(wait)
                        return await attempt(remaining - 1, attempt_number + 1)

                    if noisy:
                        out.error(
                            "All %d attempts failed for %r",
                            retries,
                            func.__qualname__,
                        )
                    raise

            return await attempt(max(retries, 1), 1)

        return wrapper

    return decorator
