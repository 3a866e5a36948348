"""Calendar Cron Entrypoint Module.

Runs the calendar reconciliation cron as its own process. Every replica can
run it: the distributed run lock makes sure only one of them reconciles per
period.

Usage:
    # Run the periodic scheduler until interrupted
    python -m mobius.calendar_cron

    # Run a single reconciliation cycle and exit
    python -m mobius.calendar_cron --once

Example Docker Compose:
    calendar-cron:
      image: mobius:latest
      command: python -m mobius.calendar_cron
      replicas: 2
      environment:
        - MOBIUS_REDIS_URL=redis://redis:6379
        - MOBIUS_DATABASE_URL=postgresql+asyncpg://mobius:mobius@db:5432/mobius
"""

import argparse
import asyncio
import signal
import sys

from .core.config import get_settings_instance
from .core.database import check_db_connection, close_db, get_async_session_local
from .core.distributed_lock import close_distributed_lock, get_distributed_lock
from .core.logging import get_logger, setup_logging
from .services.calendar_datastore import SQLAlchemyCalendarDatastore
from .services.calendar_reconciler import CalendarReconciler
from .services.calendar_scheduler import CalendarScheduler, run_calendar_cycle

logger = get_logger(__name__)


async def run_calendar_cron(*, once: bool = False) -> int:
    """Wire the cron's collaborators and run it.

    Returns the process exit code.
    """
    settings = get_settings_instance()

    if not await check_db_connection():
        logger.error("Database unavailable, calendar cron not started")
        return 1

    try:
        lock = await get_distributed_lock()
    except Exception as e:
        logger.error("Failed to initialize distributed lock: %s", e, exc_info=True)
        await close_db()
        return 1

    datastore = SQLAlchemyCalendarDatastore(get_async_session_local())
    reconciler = CalendarReconciler(datastore, settings)

    try:
        if once:
            summary = await run_calendar_cycle(reconciler, lock, settings)
            logger.info("Calendar cycle complete", extra=summary.model_dump(mode="json"))
            return 0

        scheduler = CalendarScheduler(reconciler, lock, settings)
        if scheduler.start() is None:
            return 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Signal handlers are unavailable on some platforms (Windows)
                pass

        await stop_event.wait()
        logger.info("Shutdown signal received, stopping calendar scheduler")
        await scheduler.stop()
        return 0
    finally:
        await close_distributed_lock()
        await close_db()


def main() -> None:
    """Start the calendar cron process."""
    parser = argparse.ArgumentParser(
        description="Mobius calendar reconciliation cron",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the periodic scheduler
  python -m mobius.calendar_cron

  # Run one cycle (for example from an external cron)
  python -m mobius.calendar_cron --once
        """,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single reconciliation cycle and exit",
    )
    args = parser.parse_args()

    setup_logging()

    settings = get_settings_instance()
    logger.info(
        "Calendar cron entrypoint starting",
        extra={
            "version": settings.version,
            "environment": settings.environment,
            "periodicity_seconds": settings.calendar_periodicity_seconds,
            "once": args.once,
        },
    )

    try:
        exit_code = asyncio.run(run_calendar_cron(once=args.once))
    except KeyboardInterrupt:
        logger.info("Calendar cron interrupted by user")
        exit_code = 0
    except Exception as e:
        logger.error("Calendar cron failed: %s", e, exc_info=True)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
