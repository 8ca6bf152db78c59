import asyncio
import logging

from .celery_app import celery_app
from .dispatcher import ReminderDispatcher
from .repository import SqlReminderStore


logger = logging.getLogger(__name__)


@celery_app.task(name="reminders.scan_and_dispatch")
def scan_and_dispatch_task() -> dict:
    """Run one dispatch cycle to completion. Returns the cycle summary."""
    dispatcher = ReminderDispatcher(SqlReminderStore())
    summary = asyncio.run(dispatcher.run_cycle_and_wait())
    logger.info(
        f"[Reminders] Beat cycle done | dispatched={summary.dispatched} "
        f"succeeded={summary.succeeded} failed={summary.failed}"
    )
    return {"dispatched": summary.dispatched, "succeeded": summary.succeeded, "failed": summary.failed}
