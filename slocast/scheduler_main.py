"""
Scheduler Entry Point - runs in a separate process.

Usage:
    python -m slocast.scheduler_main

This does NOT run a web server. It runs the APScheduler loop that
invokes every batch stage on its interval or daily hour.
"""

import asyncio
import signal

import structlog

from slocast.config import settings
from slocast.db.engine import close_db, get_session_factory, init_db
from slocast.logging_config import configure_logging
from slocast.services.scheduler import SloScheduler

configure_logging()
logger = structlog.get_logger(__name__)


async def main():
    logger.info("scheduler_starting", version=settings.app_version)
    await init_db()

    scheduler = SloScheduler(session_factory=get_session_factory())
    scheduler.start()

    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("scheduler_running", jobs=len(scheduler.scheduler.get_jobs()))
    await stop_event.wait()

    scheduler.stop()
    await close_db()
    logger.info("scheduler_shutdown_complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
