from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional


AsyncSleeper = Callable[[int], Awaitable[None]]


async def _asyncio_sleep_ms(ms: int) -> None:
    await asyncio.sleep(ms / 1000.0)


@dataclass
class FixedDelayPacer:
    """Fixed pause between consecutive chain submissions.

    Upstream RPC providers cap in-flight transactions per account; a constant
    gap between the two legs of a pair keeps us under that cap. The delay is
    not adaptive.
    """

    delay_ms: int = 5000
    sleeper: Optional[AsyncSleeper] = None

    def __post_init__(self) -> None:
        self.delay_ms = max(0, int(self.delay_ms))

    async def wait(self) -> int:
        if self.delay_ms == 0:
            return 0
        sleeper = self.sleeper or _asyncio_sleep_ms
        await sleeper(self.delay_ms)
        return self.delay_ms
