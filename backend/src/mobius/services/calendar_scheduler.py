"""Calendar cron scheduler.

Every server process runs a ``CalendarScheduler``; on each tick it tries the
fleet-wide run lock and, only when it gets it, runs one reconciliation pass
under a deadline. Losing the lock race is the normal case on all but one
process and is not an error.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import UTC, datetime
from typing import Any

from ..core.config import Settings
from ..core.distributed_lock import DistributedLock
from ..core.exceptions import LockError
from ..core.logging import get_logger
from ..schemas.calendar import CycleSkipReason, CycleSummary
from .calendar_reconciler import CalendarReconciler

logger = get_logger(__name__)

# In-memory per-process tick history for observability
TICK_HISTORY: deque[dict[str, Any]] = deque(maxlen=500)


async def run_calendar_cycle(
    reconciler: CalendarReconciler,
    lock: DistributedLock,
    settings: Settings,
) -> CycleSummary:
    """Run one reconciliation pass if this process wins the run lock.

    The lock is leased for one scheduling period and released when the pass
    ends. The pass is cut short after ``calendar_cycle_deadline_seconds``;
    the summary then has ``timed_out`` set and counts the work done so far.

    Raises:
        CalendarConfigurationError: If the app configuration cannot be loaded.
        LockError: If the lock backend is unreachable.
    """
    lock_name = settings.calendar_lock_name
    token = await lock.try_acquire(lock_name, settings.calendar_periodicity_seconds)
    if token is None:
        logger.info("Calendar cron lock held by another instance, skipping cycle", extra={"lock": lock_name})
        return CycleSummary(skipped_reason=CycleSkipReason.LOCK_HELD)

    summary = CycleSummary()
    deadline = settings.calendar_cycle_deadline_seconds
    try:
        async with asyncio.timeout(deadline):
            await reconciler.reconcile(summary)
    except TimeoutError:
        summary.timed_out = True
        logger.warning(
            "Calendar cycle exceeded its deadline",
            extra={"deadline_seconds": deadline, "events_created": summary.events_created},
        )
    finally:
        try:
            released = await lock.release(lock_name, token)
            if not released:
                logger.warning("Calendar cron lock expired before release", extra={"lock": lock_name})
        except LockError as e:
            logger.warning("Failed to release calendar cron lock: %s", e.message, extra={"lock": lock_name})
    return summary


class CalendarScheduler:
    """Periodic driver for the calendar reconciliation cron.

    Owns its loop task and run history; ``start()`` and ``stop()`` bracket
    the process lifetime.
    """

    def __init__(self, reconciler: CalendarReconciler, lock: DistributedLock, settings: Settings) -> None:
        self.reconciler = reconciler
        self.lock = lock
        self.settings = settings
        self.last_run_at: datetime | None = None
        self.last_summary: CycleSummary | None = None
        self.runs = 0
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> CycleSummary | None:
        """Run one guarded cycle; returns None when the cycle raised."""
        self.last_run_at = datetime.now(UTC)
        self.runs += 1
        try:
            summary = await run_calendar_cycle(self.reconciler, self.lock, self.settings)
        except Exception as ex:
            logger.error("Calendar cycle failed: %s", ex, extra={"run": self.runs})
            TICK_HISTORY.append({"ts": self.last_run_at.isoformat(), "error": str(ex)})
            return None

        self.last_summary = summary
        TICK_HISTORY.append({"ts": self.last_run_at.isoformat(), **summary.model_dump(mode="json")})
        return summary

    def start(self) -> asyncio.Task | None:
        """Start the periodic loop; a second call while running is a no-op."""
        if not self.settings.calendar_cron_enabled:
            logger.info("Calendar cron disabled by configuration")
            return None
        if self.is_running:
            return self._task

        interval = self.settings.calendar_periodicity_seconds
        logger.info(
            "Starting calendar scheduler | periodicity=%ds lock=%s",
            interval,
            self.settings.calendar_lock_name,
        )

        async def _runner() -> None:
            while True:
                await self.tick()
                try:
                    await asyncio.sleep(interval)
                except asyncio.CancelledError:
                    logger.info("Calendar scheduler stopped")
                    raise

        self._task = asyncio.create_task(_runner(), name="scheduler:calendar")
        return self._task

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
