"""
Schemas for reminders, mail configurations and delivery status
"""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


DeliveryState = Literal["pending", "success", "failure"]


class ReminderCreate(BaseModel):
    """Schema for creating a reminder"""
    title: str = Field(..., min_length=1)
    note: Optional[str] = None
    start_date: datetime
    attachment_path: Optional[str] = None


class ReminderRead(BaseModel):
    """Schema for reading reminders"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    note: Optional[str] = None
    start_date: datetime
    notified: bool
    attachment_path: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class MailConfigCreate(BaseModel):
    name: Optional[str] = None
    host: str
    port: int = Field(..., ge=1, le=65535)
    username: str
    password: str
    usage_type: str = "Reminders"
    status: Literal["Active", "Inactive"] = "Active"


class DeliveryStatusRead(BaseModel):
    """Latest delivery status for one reminder"""
    reminder_id: str
    state: DeliveryState
    detail: str
    updated_at: datetime


class ScanResult(BaseModel):
    """Returned by a manually triggered dispatch cycle"""
    dispatched: int
    succeeded: int
    failed: int
