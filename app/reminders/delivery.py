"""
Delivery invoker: one reminder, one recipient, one SMTP transaction.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import requests

from .config import settings
from .errors import DeliveryError, MailConfigurationError, SmtpProtocolError
from .message_builder import Attachment, build_message
from .metrics import deliveries_in_flight, reminders_dispatch_failed_total, reminders_dispatch_success_total
from .records import MailConfigRecord, ReminderRecord
from .smtp_transport import SmtpTransport
from app.utils.timezone import now_utc


logger = logging.getLogger(__name__)

AttachmentFetcher = Callable[[str], Awaitable[Optional[Attachment]]]


@dataclass(frozen=True)
class DeliveryReceipt:
    reminder_id: str
    recipient: str
    subject: str
    delivered_at: datetime
    server_response: str = ""


def _download_attachment(url: str, timeout: int) -> Optional[Attachment]:
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        logger.warning(f"⚠️ [Reminders] Error fetching attachment {url}: {exc!r}")
        return None
    if not response.ok:
        logger.warning(f"⚠️ [Reminders] Failed to fetch attachment {url}: HTTP {response.status_code}")
        return None
    filename = urlparse(url).path.rsplit("/", 1)[-1] or "attachment"
    content_type = response.headers.get("content-type") or "application/octet-stream"
    return Attachment(filename=filename, content_type=content_type, content=response.content)


async def fetch_attachment(url: str) -> Optional[Attachment]:
    """Download a reminder attachment; a failed download means sending without it."""
    return await asyncio.to_thread(_download_attachment, url, settings.ATTACHMENT_FETCH_TIMEOUT_SECONDS)


class DeliveryInvoker:
    """Builds the message and drives one SmtpTransport send. Never retries."""

    def __init__(
        self,
        transport: Optional[SmtpTransport] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
        attachment_fetcher: Optional[AttachmentFetcher] = None,
    ) -> None:
        self.transport = transport or SmtpTransport()
        self.clock = clock or now_utc
        self.tz = tz
        self.attachment_fetcher = attachment_fetcher or fetch_attachment

    async def deliver(
        self, reminder: ReminderRecord, mail_config: MailConfigRecord, recipient: str
    ) -> DeliveryReceipt:
        attachment = None
        if reminder.attachment_path:
            attachment = await self.attachment_fetcher(reminder.attachment_path)

        try:
            message = build_message(
                reminder,
                recipient,
                mail_config.username,
                now=self.clock(),
                tz=self.tz,
                attachment=attachment,
            )
        except ValueError as exc:
            reminders_dispatch_failed_total.labels(stage="build").inc()
            raise DeliveryError("build", str(exc), reminder_id=reminder.id) from exc

        logger.info(
            f"📧 [Reminders] Sending reminder-{reminder.id} \"{reminder.title}\" to {message.recipient} "
            f"via {mail_config.host}:{mail_config.port}"
        )
        deliveries_in_flight.inc()
        try:
            reply = await self.transport.send(message, mail_config)
        except MailConfigurationError as exc:
            reminders_dispatch_failed_total.labels(stage="connect").inc()
            raise DeliveryError("connect", str(exc), reminder_id=reminder.id) from exc
        except SmtpProtocolError as exc:
            reminders_dispatch_failed_total.labels(stage=exc.stage).inc()
            raise DeliveryError(exc.stage, exc.detail, reminder_id=reminder.id) from exc
        finally:
            deliveries_in_flight.dec()

        reminders_dispatch_success_total.inc()
        return DeliveryReceipt(
            reminder_id=reminder.id,
            recipient=message.recipient,
            subject=message.subject,
            delivered_at=self.clock(),
            server_response=reply.raw,
        )


async def deliver(
    reminder: ReminderRecord,
    mail_config: MailConfigRecord,
    recipient: str,
    *,
    transport: Optional[SmtpTransport] = None,
) -> DeliveryReceipt:
    """Convenience wrapper around DeliveryInvoker for one-off sends."""
    return await DeliveryInvoker(transport).deliver(reminder, mail_config, recipient)
