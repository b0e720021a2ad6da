"""
Recurring batch-sync scheduler.

Each job is an asyncio task that sleeps until its next trigger, runs a full
multi-tenant sync to completion, and only then computes the following trigger.
A run can therefore never overlap the next one, and a shared lock keeps the
daily and hourly jobs from running at the same time.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Callable, Awaitable, Dict

import config

logger = logging.getLogger(__name__)

DAILY_JOB = "daily_sync"
HOURLY_JOB = "hourly_sync"


def _elapsed(start: datetime, end: datetime) -> float:
    # Naive values are system-local wall-clock times; each side gets the UTC offset of its own date
    return (end.astimezone(timezone.utc) - start.astimezone(timezone.utc)).total_seconds()


def next_daily_run(now: datetime, hour: int, minute: int = 0, after: datetime = None) -> datetime:
    """
    Next hour:minute on the wall clock, strictly after `now` (and after `after`, when given).

    `now` is either naive local time or aware with a zone that carries DST rules (zoneinfo).
    The target is picked on the wall clock and only then resolved to an instant, so a DST
    change in between shifts the delay instead of the trigger time.
    """
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    while target <= now or (after is not None and target <= after):
        target += timedelta(days=1)
    return target


def next_hourly_run(now: datetime, after: datetime = None) -> datetime:
    target = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    while after is not None and target <= after:
        target += timedelta(hours=1)
    return target


def seconds_until_next_run(now: datetime, hour: int, minute: int = 0) -> float:
    """Seconds from `now` until the next hour:minute wall-clock time (always in the future)."""
    return _elapsed(now, next_daily_run(now, hour, minute))


def seconds_until_next_hour(now: datetime) -> float:
    return _elapsed(now, next_hourly_run(now))


def _local_now() -> datetime:
    # Naive on purpose: a fixed-offset aware value would carry today's offset into tomorrow
    return datetime.now()


class SyncScheduler:
    """Owns the recurring sync jobs for the process."""

    def __init__(self, sync_engine, daily_hour: int = None, daily_minute: int = None,
                 hourly_enabled: bool = None,
                 clock: Callable[[], datetime] = _local_now,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.sync_engine = sync_engine
        self.daily_hour = config.SYNC_DAILY_HOUR if daily_hour is None else daily_hour
        self.daily_minute = config.SYNC_DAILY_MINUTE if daily_minute is None else daily_minute
        self.hourly_enabled = config.SYNC_HOURLY_ENABLED if hourly_enabled is None else hourly_enabled
        self._clock = clock
        self._sleep = sleep
        self._jobs: Dict[str, asyncio.Task] = {}
        self._run_lock = asyncio.Lock()
        self.last_result: Optional[dict] = None

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._jobs.values())

    def active_jobs(self) -> dict:
        """Return info about registered jobs (for debugging/monitoring)."""
        return {
            name: {"running": not task.done(), "cancelled": task.cancelled()}
            for name, task in self._jobs.items()
        }

    async def run_sync_now(self, label: str = "manual") -> Optional[dict]:
        """Run one batch sync. Failures are logged, never raised."""
        async with self._run_lock:
            logger.info(f"Starting {label} sync...")
            try:
                result = await self.sync_engine.sync_all_clients()
            except Exception as e:
                logger.exception(f"{label} sync failed: {e}")
                return None

            failed = [r for r in result.get("results", []) if not r.get("success")]
            logger.info(
                f"{label} sync completed: {len(result.get('results', []))} client(s), "
                f"{len(failed)} failed"
            )
            for entry in failed:
                logger.warning(f"  client {entry.get('tenant_id')} ({entry.get('tenant_name')}): {entry.get('error')}")
            self.last_result = result
            return result

    def _start_job(self, name: str, next_trigger: Callable[[datetime, Optional[datetime]], datetime]):
        existing = self._jobs.get(name)
        if existing and not existing.done():
            logger.info(f"Job {name} already scheduled, skipping duplicate")
            return

        async def _loop():
            # Each trigger must come after the previous one, even if the timer woke slightly early
            last_target = None
            while True:
                try:
                    now = self._clock()
                    last_target = next_trigger(now, last_target)
                    delay = max(0.0, _elapsed(now, last_target))
                    logger.info(f"Next {name} at {last_target:%Y-%m-%d %H:%M} (in {delay:.0f}s)")
                    await self._sleep(delay)
                    await self.run_sync_now(name)
                except asyncio.CancelledError:
                    logger.info(f"Job {name} cancelled")
                    raise

        self._jobs[name] = asyncio.create_task(_loop(), name=name)

    def start_daily_sync(self):
        self._start_job(
            DAILY_JOB,
            lambda now, after: next_daily_run(now, self.daily_hour, self.daily_minute, after),
        )
        logger.info(f"Daily sync scheduled at {self.daily_hour:02d}:{self.daily_minute:02d}")

    def start_hourly_sync(self):
        self._start_job(HOURLY_JOB, next_hourly_run)
        logger.info("Hourly sync scheduled")

    def start_all(self):
        """Register the daily job (and the hourly one when enabled). Needs a running event loop."""
        self.start_daily_sync()
        if self.hourly_enabled:
            self.start_hourly_sync()

    async def stop_all(self):
        """Cancel every registered job and wait for them to unwind."""
        tasks = list(self._jobs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()
        logger.info("All scheduled tasks stopped")
