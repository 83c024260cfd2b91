"""Fixed-interval ticker with cooperative cancellation.

The callback is awaited before the next sleep, so ticks never overlap.
Cancelling does not interrupt a tick already running; the ticker exits
after that tick completes.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout``; returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


class Ticker:
    """Run ``callback`` every ``interval`` seconds until cancelled."""

    def __init__(
        self,
        interval: float,
        token: CancellationToken,
        sleep: Callable[[float], Awaitable[object]] | None = None,
    ):
        self.interval = interval
        self.token = token
        self._sleep = sleep
        self.ticks = 0

    async def _pause(self) -> None:
        if self._sleep is not None:
            await self._sleep(self.interval)
        else:
            await self.token.wait(self.interval)

    async def run(self, callback: Callable[[], Awaitable[None]]) -> None:
        while not self.token.cancelled:
            await callback()
            self.ticks += 1
            if self.token.cancelled:
                break
            await self._pause()
