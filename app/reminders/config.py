from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class ReminderSettings(BaseSettings):
    # Scheduling
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_SCAN_INTERVAL_SECONDS: int = 60
    SCHEDULER_BATCH_SIZE: int = 500

    # Delivery
    MAIL_USAGE_TYPE: str = "Reminders"
    RECIPIENT_EMAIL: Optional[str] = None
    SMTP_TIMEOUT_SECONDS: float = 30.0
    SMTP_LOCAL_HOSTNAME: Optional[str] = None  # EHLO identifier, defaults to the FQDN
    ATTACHMENT_FETCH_TIMEOUT_SECONDS: int = 15
    BRAND_NAME: str = "Reminder Mailer"

    # Celery configuration (optional beat-driven deployment)
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None
    WORKER_CONCURRENCY: int = 2

    # Delivery status board: terminal entries older than this are dropped
    STATUS_RETENTION_SECONDS: int = 86400

    # Metrics
    METRICS_ENABLED: bool = True

    model_config = SettingsConfigDict(env_prefix="REMINDER_", env_file=".env", extra="ignore")


settings = ReminderSettings()
