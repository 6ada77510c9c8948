"""
scheduler.py - Fixed-interval poll loop

Fires immediately, then on the wall-clock grid start + n * interval.
A tick that lands while the job is still running is skipped, never queued.
Exceptions from the job are logged here and the loop keeps going.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from loguru import logger


class Scheduler:
    def __init__(
        self,
        job: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        stop_event: Optional[asyncio.Event] = None,
        max_ticks: Optional[int] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.job = job
        self.interval_seconds = interval_seconds
        self.stop_event = stop_event if stop_event is not None else asyncio.Event()
        self.max_ticks = max_ticks

        self.ticks_run = 0
        self.ticks_skipped = 0
        self.errors = 0

    def stop(self) -> None:
        self.stop_event.set()

    async def _fire(self) -> None:
        self.ticks_run += 1
        try:
            await self.job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.errors += 1
            logger.exception(f"POLL_ERROR | tick={self.ticks_run} | {type(e).__name__}: {e}")

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        logger.info(f"SCHEDULER_START | interval={self.interval_seconds}s")

        while not self.stop_event.is_set():
            await self._fire()
            if self.max_ticks is not None and self.ticks_run >= self.max_ticks:
                break

            next_tick += self.interval_seconds
            now = loop.time()
            if now >= next_tick:
                missed = int((now - next_tick) // self.interval_seconds) + 1
                next_tick += missed * self.interval_seconds
                self.ticks_skipped += missed
                logger.warning(f"TICK_SKIPPED | missed={missed} | cycle overran {self.interval_seconds}s interval")

            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=max(0.0, next_tick - loop.time()))
            except asyncio.TimeoutError:
                continue

        logger.info(
            f"SCHEDULER_STOP | ticks={self.ticks_run} | skipped={self.ticks_skipped} | errors={self.errors}"
        )
