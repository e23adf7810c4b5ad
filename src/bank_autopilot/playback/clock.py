"""Time abstraction for playback and scheduling.

Every deliberate wait in the engine (settle delays, retry backoff, load
waits, cron sleeps) goes through a ``Clock``, so tests can run the full state
machine without real timers.
"""

import asyncio
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...

    async def wait_for(self, event: asyncio.Event, timeout: float) -> bool:
        """Wait until ``event`` is set. Returns False if ``timeout`` elapsed first."""
        ...


class SystemClock:
    """Wall-clock implementation backed by asyncio."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def wait_for(self, event: asyncio.Event, timeout: float) -> bool:
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False
