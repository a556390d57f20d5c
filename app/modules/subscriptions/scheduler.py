"""
In-process trigger for the daily expiry sweep.

Used when SUBSCRIPTION_SWEEP_MODE is "inprocess": the FastAPI app owns one
scheduler, starts it on startup and stops it on shutdown. Runs never overlap.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from .dates import Clock, utc_now, ensure_utc
from .sweep import ExpirySweeper, SweepReport

logger = logging.getLogger(__name__)


class SubscriptionExpiryScheduler:
    """Runs ExpirySweeper.run on a cron schedule."""

    def __init__(
        self,
        sweeper: ExpirySweeper,
        cron: str = "0 0 * * *",
        tz_name: str = "UTC",
        clock: Clock = utc_now,
    ):
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression: {cron}")
        self.sweeper = sweeper
        self.cron = cron
        self.zone = ZoneInfo(tz_name)
        self.clock = clock
        self._stop_event = asyncio.Event()
        self._run_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the scheduler loop as a background task."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Subscription expiry scheduler started (cron='{self.cron}', tz={self.zone.key})")

    async def stop(self) -> None:
        """Stop the loop and wait for an in-flight sweep to finish."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Subscription expiry scheduler stopped")

    def next_run_after(self, moment: datetime) -> datetime:
        local = ensure_utc(moment).astimezone(self.zone)
        return croniter(self.cron, local).get_next(datetime)

    async def run_once(self, now: Optional[datetime] = None) -> Optional[SweepReport]:
        """Run a sweep now unless one is already running; returns None when skipped."""
        if self._run_lock.locked():
            logger.warning("Subscription expiry sweep already running; skipping this trigger")
            return None
        async with self._run_lock:
            self.last_report = await self.sweeper.run(now or self.clock())
            return self.last_report

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            now = self.clock()
            next_run = self.next_run_after(now)
            delay = max(0.0, (ensure_utc(next_run) - ensure_utc(now)).total_seconds())
            logger.debug(f"Next subscription expiry sweep at {next_run.isoformat()} (in {delay:.0f}s)")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break  # Stopped while waiting
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except Exception as exc:
                # Retried on the next scheduled run
                logger.exception(f"Subscription expiry sweep failed: {exc}")
