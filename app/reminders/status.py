"""
Delivery status events, keyed by reminder id.

A later event for the same reminder replaces the earlier one, so repeated
cycles for a reminder whose flag has not landed yet collapse into one entry.
Success and failure entries older than the retention window are pruned;
pending entries stay until a terminal event replaces them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .config import settings
from app.utils.timezone import now_utc


logger = logging.getLogger(__name__)

PENDING = "pending"
SUCCESS = "success"
FAILURE = "failure"
STATES = (PENDING, SUCCESS, FAILURE)


@dataclass(frozen=True)
class DeliveryStatus:
    reminder_id: str
    state: str
    detail: str
    updated_at: datetime


StatusListener = Callable[[DeliveryStatus], None]


class DeliveryStatusBoard:
    """Thread-safe latest-status-per-reminder store with optional listeners."""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        retention_seconds: Optional[float] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._statuses: Dict[str, DeliveryStatus] = {}
        self._listeners: List[StatusListener] = []
        self._clock = clock or now_utc
        self.retention = timedelta(
            seconds=retention_seconds if retention_seconds is not None else settings.STATUS_RETENTION_SECONDS
        )

    def subscribe(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def emit(self, reminder_id: str, state: str, detail: str = "") -> DeliveryStatus:
        if state not in STATES:
            raise ValueError(f"unknown delivery state {state!r}")
        status = DeliveryStatus(
            reminder_id=str(reminder_id), state=state, detail=detail, updated_at=self._clock()
        )
        with self._lock:
            self._statuses[status.reminder_id] = status
            self._prune(status.updated_at)
            listeners = list(self._listeners)

        if state == FAILURE:
            logger.warning(f"❌ [Reminders] reminder-{status.reminder_id}: {detail}")
        elif state == SUCCESS:
            logger.info(f"✅ [Reminders] reminder-{status.reminder_id}: {detail}")
        else:
            logger.info(f"⏳ [Reminders] reminder-{status.reminder_id}: {detail}")

        for listener in listeners:
            try:
                listener(status)
            except Exception:  # noqa: BLE001
                logger.exception(f"[Reminders] Status listener failed for reminder-{status.reminder_id}")
        return status

    def get(self, reminder_id: str) -> Optional[DeliveryStatus]:
        with self._lock:
            return self._statuses.get(str(reminder_id))

    def all(self) -> List[DeliveryStatus]:
        with self._lock:
            return sorted(self._statuses.values(), key=lambda s: s.updated_at, reverse=True)

    def clear(self) -> None:
        with self._lock:
            self._statuses.clear()

    def _prune(self, now: datetime) -> None:
        # caller holds the lock
        cutoff = now - self.retention
        stale = [
            rid for rid, s in self._statuses.items()
            if s.state != PENDING and s.updated_at < cutoff
        ]
        for rid in stale:
            del self._statuses[rid]


status_board = DeliveryStatusBoard()
