"""
Reminder and mail configuration models
"""
from datetime import datetime, timezone as dt_timezone
from sqlalchemy import Column, String, DateTime, Boolean, Integer, Text, Index
import uuid

from app.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


class Reminder(Base):
    """A scheduled reminder; the delivery pipeline only flips ``notified``."""
    __tablename__ = "reminders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=False, index=True)
    notified = Column(Boolean, nullable=False, default=False)
    attachment_path = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_reminders_notified_start", "notified", "start_date"),
    )


class MailConfiguration(Base):
    """SMTP account used for outbound mail, tagged by usage type"""
    __tablename__ = "app_mail_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=True)
    host = Column(String, nullable=False)
    port = Column(Integer, nullable=False)
    username = Column(String, nullable=False)
    password = Column(String, nullable=False)
    usage_type = Column(String, nullable=False, default="Info")
    status = Column(String, nullable=False, default="Active")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_mail_configs_usage_status", "usage_type", "status"),
    )
