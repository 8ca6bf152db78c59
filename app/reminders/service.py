import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from app.core.config import settings as app_settings
from .api import router as reminders_router
from .config import settings
from .dispatcher import ReminderDispatcher
from .repository import SqlReminderStore
from .scheduler import ReminderScheduler


logger = logging.getLogger(__name__)


def create_app(
    dispatcher: Optional[ReminderDispatcher] = None,
    scheduler_enabled: Optional[bool] = None,
    init_database: bool = True,
    metrics_enabled: Optional[bool] = None,
) -> FastAPI:
    """App factory; `python -m app.reminders.service` serves it with uvicorn."""
    dispatcher = dispatcher or ReminderDispatcher(SqlReminderStore())
    if scheduler_enabled is None:
        scheduler_enabled = settings.SCHEDULER_ENABLED
    if metrics_enabled is None:
        metrics_enabled = settings.METRICS_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if init_database:
            from app.db.session import init_db
            init_db()
        scheduler = None
        if scheduler_enabled:
            scheduler = ReminderScheduler(dispatcher)
            scheduler.start()
        else:
            logger.info("[Reminders] Scheduler disabled - cycles run only via POST /scan or Celery beat")
        app.state.reminder_scheduler = scheduler
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()

    app = FastAPI(title="Reminder Service", version=app_settings.VERSION, lifespan=lifespan)
    app.state.reminder_dispatcher = dispatcher
    app.include_router(reminders_router, prefix=f"{app_settings.API_V1_STR}/reminders", tags=["reminders"])

    @app.get("/health")
    def health():
        return {"status": "ok"}

    if metrics_enabled:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")
    return app


def main():
    """Serve the reminder API (and its scheduler) with uvicorn."""
    logger.info(f"🚀 [Reminders] Serving on {app_settings.SERVER_HOST}:{app_settings.SERVER_PORT}")
    uvicorn.run(
        "app.reminders.service:create_app",
        factory=True,
        host=app_settings.SERVER_HOST,
        port=app_settings.SERVER_PORT,
        log_level=app_settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
