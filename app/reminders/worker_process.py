#!/usr/bin/env python3
"""
Standalone reminder scheduler process

Runs the scan/dispatch loop without the HTTP service:
    python -m app.reminders.worker_process
"""

import asyncio
import logging
import os
import signal
import sys

# Load environment variables from .env file before importing settings
from dotenv import load_dotenv

env_file = os.path.join(os.getcwd(), ".env")
if os.path.exists(env_file):
    load_dotenv(env_file)

from app.core.config import settings as app_settings  # noqa: E402
from app.db.session import init_db  # noqa: E402
from .dispatcher import ReminderDispatcher  # noqa: E402
from .repository import SqlReminderStore  # noqa: E402
from .scheduler import ReminderScheduler  # noqa: E402

logging.basicConfig(
    level=getattr(logging, app_settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


async def run_worker_process() -> None:
    init_db()
    scheduler = ReminderScheduler(ReminderDispatcher(SqlReminderStore()))
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:  # pragma: no cover
            pass

    scheduler.start()
    try:
        await stop_requested.wait()
    finally:
        await scheduler.stop()


def main():
    """Main entry point for worker process"""
    logger.info("🚀 Starting reminder scheduler process")
    try:
        asyncio.run(run_worker_process())
    except KeyboardInterrupt:
        logger.info("🛑 Worker process shutdown requested")
    except Exception as e:
        logger.error(f"❌ Worker process error: {e}")
        sys.exit(1)
    finally:
        logger.info("👋 Worker process terminated")


if __name__ == "__main__":
    main()
