"""
Due-reminder dispatcher.

One cycle resolves the mail configuration and recipient, lists due reminders
that are not yet notified, and starts one independent delivery task per
reminder without waiting for the previous one. A reminder is flagged notified
only after the server accepted the message. Failures leave the flag alone, so
the next cycle picks the reminder up again; there is no retry limit.

Delivery is at-least-once: the flag is written unconditionally after success
and nothing claims a reminder before sending, so overlapping cycles can both
deliver the same reminder.

Store calls are blocking database I/O and run in worker threads, so a slow
flag write holds up only the delivery it belongs to.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Set

from .delivery import DeliveryInvoker, DeliveryReceipt
from .errors import DeliveryError
from .metrics import scheduler_dispatched_total, scheduler_scans_total, scheduler_skipped_scans_total
from .records import MailConfigRecord, ReminderRecord
from .repository import ReminderStore
from .status import FAILURE, PENDING, SUCCESS, DeliveryStatusBoard, status_board
from app.utils.timezone import now_utc


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryOutcome:
    reminder_id: str
    succeeded: bool
    receipt: Optional[DeliveryReceipt] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CycleSummary:
    dispatched: int
    succeeded: int
    failed: int


class ReminderDispatcher:
    def __init__(
        self,
        store: ReminderStore,
        invoker: Optional[DeliveryInvoker] = None,
        status: Optional[DeliveryStatusBoard] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.invoker = invoker or DeliveryInvoker()
        self.status = status or status_board
        self.clock = clock or now_utc
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def run_cycle(self) -> List["asyncio.Task[DeliveryOutcome]"]:
        """Start deliveries for every due reminder and return their tasks."""
        scheduler_scans_total.inc()

        mail_config = await asyncio.to_thread(self.store.get_active_reminder_mail_config)
        if mail_config is None:
            logger.debug("[Reminders] No active mail configuration for reminders - skipping cycle")
            scheduler_skipped_scans_total.inc()
            return []

        recipient = await asyncio.to_thread(self.store.get_current_recipient_address)
        if not recipient:
            logger.debug("[Reminders] No recipient address available - skipping cycle")
            scheduler_skipped_scans_total.inc()
            return []

        due = await asyncio.to_thread(self.store.list_due_unnotified_reminders, self.clock())
        if not due:
            return []

        logger.info(f"🔍 [Reminders] {len(due)} due reminder(s) found, dispatching to {recipient}")
        tasks = []
        for reminder in due:
            self.status.emit(reminder.id, PENDING, f'Sending reminder "{reminder.title}" to {recipient}...')
            task = asyncio.create_task(
                self._deliver_one(reminder, mail_config, recipient), name=f"reminder-{reminder.id}"
            )
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            tasks.append(task)
        scheduler_dispatched_total.inc(len(tasks))
        return tasks

    async def run_cycle_and_wait(self) -> CycleSummary:
        tasks = await self.run_cycle()
        outcomes = await asyncio.gather(*tasks)
        succeeded = sum(1 for o in outcomes if o.succeeded)
        return CycleSummary(dispatched=len(outcomes), succeeded=succeeded, failed=len(outcomes) - succeeded)

    async def drain(self) -> None:
        """Wait for every delivery started so far."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _deliver_one(
        self, reminder: ReminderRecord, mail_config: MailConfigRecord, recipient: str
    ) -> DeliveryOutcome:
        try:
            receipt = await self.invoker.deliver(reminder, mail_config, recipient)
        except DeliveryError as exc:
            self.status.emit(reminder.id, FAILURE, f"Failed: {exc}")
            return DeliveryOutcome(reminder.id, False, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"❌ [Reminders] Unexpected error delivering reminder-{reminder.id}")
            self.status.emit(reminder.id, FAILURE, f"Failed: {exc!r}")
            return DeliveryOutcome(reminder.id, False, error=repr(exc))

        try:
            await asyncio.to_thread(self.store.mark_reminder_notified, reminder.id)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"❌ [Reminders] Email sent but reminder-{reminder.id} could not be marked notified")
            self.status.emit(
                reminder.id, FAILURE, f"Failed: email sent to {recipient} but marking notified failed: {exc}"
            )
            return DeliveryOutcome(reminder.id, False, receipt=receipt, error=str(exc))

        self.status.emit(reminder.id, SUCCESS, f"Reminder email sent to {recipient}!")
        return DeliveryOutcome(reminder.id, True, receipt=receipt)
