from datetime import datetime
from typing import Callable, List, Optional, Protocol
from sqlalchemy.orm import Session
from sqlalchemy import select, update

from .models import Reminder, MailConfiguration
from .records import ReminderRecord, MailConfigRecord
from .schemas import ReminderCreate, MailConfigCreate
from .config import settings
from app.utils.timezone import now_utc, to_utc_aware


def create_reminder(db: Session, data: ReminderCreate) -> Reminder:
    # Normalize to UTC so string-typed SQLite columns compare chronologically
    reminder = Reminder(
        title=data.title,
        note=data.note,
        start_date=to_utc_aware(data.start_date),
        attachment_path=data.attachment_path,
        notified=False,
    )
    db.add(reminder)
    db.commit()
    db.refresh(reminder)
    return reminder


def get_reminder(db: Session, reminder_id: str) -> Optional[Reminder]:
    return db.get(Reminder, reminder_id)


def list_reminders(
    db: Session,
    notified: Optional[bool] = None,
    limit: int = 100,
) -> List[Reminder]:
    stmt = select(Reminder).order_by(Reminder.start_date.desc()).limit(limit)
    if notified is not None:
        stmt = stmt.where(Reminder.notified == notified)
    return list(db.execute(stmt).scalars())


def get_due_unnotified_reminders(db: Session, now: datetime, limit: int = 1000) -> List[Reminder]:
    stmt = (
        select(Reminder)
        .where(Reminder.notified == False)  # noqa: E712
        .where(Reminder.start_date <= to_utc_aware(now))
        .order_by(Reminder.start_date.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def mark_notified(db: Session, reminder_id: str) -> bool:
    """Unconditional write; returns False when the reminder no longer exists."""
    result = db.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id)
        .values(notified=True, updated_at=now_utc())
    )
    db.commit()
    return result.rowcount > 0


def create_mail_config(db: Session, data: MailConfigCreate) -> MailConfiguration:
    config = MailConfiguration(**data.model_dump())
    db.add(config)
    db.commit()
    db.refresh(config)
    return config


def get_active_mail_config(db: Session, usage_type: str) -> Optional[MailConfiguration]:
    stmt = (
        select(MailConfiguration)
        .where(MailConfiguration.usage_type == usage_type)
        .where(MailConfiguration.status == "Active")
        .order_by(MailConfiguration.id.asc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def to_record(reminder: Reminder) -> ReminderRecord:
    return ReminderRecord(
        id=str(reminder.id),
        title=reminder.title,
        note=reminder.note,
        start_date=to_utc_aware(reminder.start_date),
        attachment_path=reminder.attachment_path,
    )


class ReminderStore(Protocol):
    """What the dispatcher needs from the reminder and mail-config stores."""

    def list_due_unnotified_reminders(self, now: datetime) -> List[ReminderRecord]: ...

    def get_active_reminder_mail_config(self) -> Optional[MailConfigRecord]: ...

    def mark_reminder_notified(self, reminder_id: str) -> None: ...

    def get_current_recipient_address(self) -> Optional[str]: ...


class SqlReminderStore:
    """ReminderStore backed by SQLAlchemy sessions, one short session per call."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        usage_type: Optional[str] = None,
        recipient: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        if session_factory is None:
            from app.db.session import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self.usage_type = usage_type or settings.MAIL_USAGE_TYPE
        self.recipient = recipient if recipient is not None else settings.RECIPIENT_EMAIL
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE

    def list_due_unnotified_reminders(self, now: datetime) -> List[ReminderRecord]:
        db = self._session_factory()
        try:
            return [to_record(r) for r in get_due_unnotified_reminders(db, now, limit=self.batch_size)]
        finally:
            db.close()

    def get_active_reminder_mail_config(self) -> Optional[MailConfigRecord]:
        db = self._session_factory()
        try:
            config = get_active_mail_config(db, self.usage_type)
            if config is None:
                return None
            return MailConfigRecord(
                host=config.host,
                port=int(config.port),
                username=config.username,
                password=config.password,
                name=config.name,
            )
        finally:
            db.close()

    def mark_reminder_notified(self, reminder_id: str) -> None:
        db = self._session_factory()
        try:
            if not mark_notified(db, reminder_id):
                raise LookupError(f"reminder {reminder_id} not found")
        finally:
            db.close()

    def get_current_recipient_address(self) -> Optional[str]:
        recipient = (self.recipient or "").strip()
        return recipient or None
