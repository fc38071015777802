# cyberrange/core/polling.py
"""Poll-with-timeout primitive for eventually consistent remote state."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from cyberrange.core.exceptions import ReadinessTimeoutError


T = TypeVar("T")


async def poll_until(
    probe: Callable[[], Awaitable[T | None]],
    *,
    timeout: float,
    interval: float,
    what: str,
) -> T:
    """Call ``probe`` until it returns a truthy value or the budget runs out.

    The probe always runs at least once, even with a zero timeout.

    Args:
        probe: Coroutine function returning a truthy value once ready.
        timeout: Maximum seconds to keep probing.
        interval: Seconds to sleep between two probes.
        what: Human-readable description used in the timeout message.

    Returns:
        The first truthy value returned by the probe.

    Raises:
        ReadinessTimeoutError: If the probe never succeeds in time.
    """
    deadline = time.monotonic() + timeout
    while True:
        result = await probe()
        if result:
            return result
        if time.monotonic() >= deadline:
            raise ReadinessTimeoutError(f"{what} not ready after {timeout}s")
        await asyncio.sleep(interval)
