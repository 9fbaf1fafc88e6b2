"""Transport clock — projects the server's loop position at a fixed rate.

Runs as its own asyncio task next to the update poller.  Each tick reads the
shared ``SongState`` (never the network) and hands the projected position
to a callback, e.g. a progress display.  The task sleeps between ticks and
never blocks the event loop.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from looper_client.config import settings
from looper_client.state import SongState

logger = logging.getLogger(__name__)

TickCallback = Callable[[float | None, float | None], None]


class TransportClock:
    """Periodic ``(position, loop_length)`` ticker over a ``SongState``."""

    def __init__(
        self,
        song: SongState,
        on_tick: TickCallback,
        hz: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.song = song
        self.on_tick = on_tick
        self.interval = 1.0 / (hz if hz is not None else settings.clock_tick_hz)
        self._clock = clock
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    def tick(self) -> float | None:
        """Compute the current position, report it, and return it."""
        position = self.song.transport_position_at(self._clock())
        self.on_tick(position, self.song.loop_length)
        return position

    async def run(self) -> None:
        """Tick every ``interval`` seconds until ``stop()``."""
        logger.debug("⏱️  Transport clock started (interval=%.3fs)", self.interval)
        while not self._stop.is_set():
            self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.debug("⏱️  Transport clock stopped")
