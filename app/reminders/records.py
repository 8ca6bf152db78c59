"""Detached, immutable views of store rows handed to the delivery pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class ReminderRecord:
    id: str
    title: str
    start_date: datetime
    note: Optional[str] = None
    attachment_path: Optional[str] = None


@dataclass(frozen=True)
class MailConfigRecord:
    host: str
    port: int
    username: str
    password: str = ""
    name: Optional[str] = None

    def __repr__(self) -> str:
        # keep the password out of logs
        return f"MailConfigRecord(host={self.host!r}, port={self.port!r}, username={self.username!r})"
