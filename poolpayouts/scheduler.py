"""Wall-clock scheduling of payout cycles."""
from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Set

from .orchestrator import CycleResult, PayoutOrchestrator

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_fire_time(now: datetime, interval_minutes: int) -> datetime:
    """First slot strictly after ``now`` whose minutes since midnight are a multiple of the interval.

    Slots restart at every midnight, so an interval that does not divide a
    day evenly still fires at 00:00.
    """
    if interval_minutes <= 0:
        raise ValueError("interval_minutes must be positive")
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed_minutes = (now - midnight).total_seconds() / 60
    slot = math.floor(elapsed_minutes / interval_minutes) + 1
    candidate = midnight + timedelta(minutes=slot * interval_minutes)
    return min(candidate, midnight + timedelta(days=1))


def minutes_until_next_fire(now: datetime, interval_minutes: int) -> int:
    remaining = (next_fire_time(now, interval_minutes) - now).total_seconds()
    return int(math.ceil(remaining / 60))


class PeriodicTask:
    """Background loop that sleeps ``delay()`` seconds and then runs ``step``, until stopped."""

    def __init__(
        self,
        name: str,
        step: Callable[[], Awaitable[object]],
        delay: Callable[[], float],
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.name = name
        self._step = step
        self._delay = delay
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def _loop(self) -> None:
        while True:
            await self._sleep(max(self._delay(), 0.0))
            try:
                await self._step()
            except Exception:
                logger.exception("Periodic task %s failed; continuing", self.name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class PayoutScheduler:
    def __init__(
        self,
        orchestrator: PayoutOrchestrator,
        interval_minutes: int,
        progress_interval_minutes: int = 10,
        *,
        now: Callable[[], datetime] = _utcnow,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if interval_minutes <= 0 or progress_interval_minutes <= 0:
            raise ValueError("intervals must be positive")
        self.orchestrator = orchestrator
        self.interval_minutes = interval_minutes
        self.progress_interval_minutes = progress_interval_minutes
        self._now = now
        self._target: Optional[datetime] = None
        self._cycles: Set[asyncio.Task] = set()
        self._fire_task = PeriodicTask("payout-scheduler", self._fire, self._seconds_until_target, sleep)
        self._progress_task = PeriodicTask(
            "payout-progress",
            self.report_progress,
            lambda: progress_interval_minutes * 60.0,
            sleep,
        )

    @property
    def running(self) -> bool:
        return self._fire_task.running

    @property
    def next_run(self) -> Optional[datetime]:
        return self._target

    def start(self) -> None:
        self._target = next_fire_time(self._now(), self.interval_minutes)
        self._fire_task.start()
        self._progress_task.start()
        logger.info(
            "Scheduled payouts every %s minutes; next run at %s",
            self.interval_minutes,
            self._target.isoformat(),
        )

    def _seconds_until_target(self) -> float:
        if self._target is None:
            self._target = next_fire_time(self._now(), self.interval_minutes)
        return (self._target - self._now()).total_seconds()

    async def _fire(self) -> None:
        slot = self._target or self._now()
        # a late wakeup skips the slots it missed instead of firing them back to back
        self._target = next_fire_time(max(slot, self._now()), self.interval_minutes)
        logger.info("Running scheduled payout for slot %s", slot.isoformat())
        self.trigger()
        logger.debug("Next payout scheduled at %s", self._target.isoformat())

    def trigger(self) -> asyncio.Task:
        """Start a cycle in its own task; overlapping cycles are rejected by the orchestrator."""
        task = asyncio.create_task(self._run_cycle(), name="payout-cycle")
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)
        return task

    async def _run_cycle(self) -> Optional[CycleResult]:
        try:
            return await self.orchestrator.run_cycle()
        except Exception:
            logger.exception("Unexpected error in payout cycle")
            return None

    async def report_progress(self) -> int:
        remaining = minutes_until_next_fire(self._now(), self.interval_minutes)
        logger.debug("Progress update: %s minutes until the next payout", remaining)
        return remaining

    async def stop(self) -> None:
        await self._fire_task.stop()
        await self._progress_task.stop()
        if self._cycles:
            logger.info("Waiting for %s in-flight payout cycle(s) to finish", len(self._cycles))
            await asyncio.gather(*list(self._cycles), return_exceptions=True)
        logger.info("Payout scheduler stopped")
