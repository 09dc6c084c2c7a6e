"""
clusterforge/utils/polling.py

Deadline-bounded polling. Every readiness wait in the bootstrap pipeline (VM
health, API server, node registration) is expressed as "call this probe every
N seconds until it returns a value or the deadline passes".
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional
from typing_extensions import TypeVar

T = TypeVar("T")


class PollTimeout(Exception):
    """Raised by poll_until when the deadline passes without a successful probe."""


def monotonic() -> float:
    return asyncio.get_running_loop().time()


async def poll_until(
    probe: Callable[[], Awaitable[Optional[T]]],
    *,
    timeout: float,
    interval: float,
    deadline: Optional[float] = None,
    on_miss: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Calls `probe` until it returns something other than None.

    The probe is always attempted at least once. After a miss we sleep `interval`
    seconds (clamped so we never sleep past the deadline) and try again.

    Args:
        probe: Async callable returning a value when ready, or None when not yet.
        timeout: Seconds from now until we give up. Ignored when `deadline` is given.
        interval: Seconds between probes.
        deadline: Absolute loop time to give up at, for callers sharing one deadline.
        on_miss: Optional hook awaited after each miss with the seconds remaining.

    Returns:
        The first non-None value returned by `probe`.

    Raises:
        PollTimeout: If the deadline passes first.
    """
    end = deadline if deadline is not None else monotonic() + timeout

    while True:
        result = await probe()
        if result is not None:
            return result

        remaining = end - monotonic()
        if remaining <= 0:
            raise PollTimeout(f"condition not met within {timeout}s")
        if on_miss is not None:
            await on_miss(remaining)
        # never sleep past the deadline; the loop probes once more at the deadline
        await asyncio.sleep(min(interval, max(end - monotonic(), 0)))
