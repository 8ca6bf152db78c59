"""
Recurring scan scheduler with an owned start/stop lifecycle.

The tick source is pluggable: anything with an async wait(interval) can stand
in for AsyncioTicker, which sleeps on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from .config import settings
from .dispatcher import ReminderDispatcher


logger = logging.getLogger(__name__)


class Ticker(Protocol):
    async def wait(self, interval: float) -> None: ...


class AsyncioTicker:
    async def wait(self, interval: float) -> None:
        await asyncio.sleep(float(interval))


class ReminderScheduler:
    """Runs a dispatch cycle on start and then once per tick until stopped.

    Cycles do not wait for the deliveries they started; a slow SMTP session can
    still be in flight when the next cycle lists due reminders.
    """

    def __init__(
        self,
        dispatcher: ReminderDispatcher,
        interval_seconds: Optional[float] = None,
        ticker: Optional[Ticker] = None,
        run_immediately: bool = True,
    ) -> None:
        self.dispatcher = dispatcher
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else settings.SCHEDULER_SCAN_INTERVAL_SECONDS
        )
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.ticker = ticker or AsyncioTicker()
        self.run_immediately = run_immediately
        self.cycles = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._loop(), name="reminder-scheduler")
        logger.info(f"🚀 [Scheduler] Started - scanning every {self.interval_seconds:g}s")
        return self._task

    async def stop(self, drain: bool = True) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if drain:
            await self.dispatcher.drain()
        logger.info(f"🛑 [Scheduler] Stopped after {self.cycles} cycle(s)")

    async def run_once(self) -> int:
        """One dispatch cycle; returns the number of deliveries started."""
        try:
            started = len(await self.dispatcher.run_cycle())
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"❌ [Scheduler] Dispatch cycle failed: {exc}")
            started = 0
        self.cycles += 1
        return started

    async def _loop(self) -> None:
        if not self.run_immediately:
            await self.ticker.wait(self.interval_seconds)
        while True:
            await self.run_once()
            await self.ticker.wait(self.interval_seconds)
