"""
Reminder email rendering and MIME assembly.

Pure functions: nothing here touches the network or the database. Given a
reminder, the addresses and a clock reading the output is fixed except for the
random boundary/Message-ID token, which callers may inject.
"""

from __future__ import annotations

import base64
import html
import uuid
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Callable, List, Optional, Tuple

from .config import settings
from .records import ReminderRecord
from app.utils.timezone import get_zoneinfo, now_utc, to_utc_aware


SUBJECT_PREFIX = "Reminder: "
MAX_LINE_BYTES = 998

_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


@dataclass(frozen=True)
class Attachment:
    filename: str
    content_type: str
    content: bytes


@dataclass(frozen=True)
class OutboundMessage:
    sender: str
    recipient: str
    subject: str
    text_body: str
    html_body: str
    boundary: str
    headers: Tuple[Tuple[str, str], ...]
    created_at: datetime
    attachment: Optional[Attachment] = None
    mixed_boundary: Optional[str] = None

    def as_bytes(self) -> bytes:
        """Full message (headers + multipart body) with CRLF line endings."""
        lines: List[str] = [f"{name}: {value}" for name, value in self.headers]
        lines.append("MIME-Version: 1.0")
        if self.attachment is not None:
            lines.append(f'Content-Type: multipart/mixed; boundary="{self.mixed_boundary}"')
            lines.append("")
            lines.append(f"--{self.mixed_boundary}")
            lines.extend(self._alternative_part())
            lines.append("")
            lines.append(f"--{self.mixed_boundary}")
            lines.extend(_attachment_part(self.attachment))
            lines.append(f"--{self.mixed_boundary}--")
        else:
            lines.extend(self._alternative_part())
        # bodies and base64 payloads carry bare LF; the wire wants CRLF everywhere
        text = "\n".join(lines).replace("\r\n", "\n") + "\n"
        return text.replace("\n", "\r\n").encode("utf-8")

    def _alternative_part(self) -> List[str]:
        lines = [f'Content-Type: multipart/alternative; boundary="{self.boundary}"', ""]
        for subtype, body in (("plain", self.text_body), ("html", self.html_body)):
            encoding, payload = _encode_body(body)
            lines.append(f"--{self.boundary}")
            lines.append(f"Content-Type: text/{subtype}; charset=UTF-8")
            lines.append(f"Content-Transfer-Encoding: {encoding}")
            lines.append("")
            lines.append(payload)
        lines.append(f"--{self.boundary}--")
        return lines


# --- formatting helpers ---

def format_schedule(start_date: datetime, tz: Optional[tzinfo] = None) -> str:
    """Locale-independent long form, e.g. 'Monday, January 5, 2026 at 9:30 AM'."""
    local = to_utc_aware(start_date).astimezone(tz or get_zoneinfo())
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return (
        f"{_WEEKDAYS[local.weekday()]}, {_MONTHS[local.month - 1]} {local.day}, {local.year} "
        f"at {hour}:{local.minute:02d} {meridiem}"
    )


def format_date_header(moment: datetime) -> str:
    """RFC 5322 date-time, built by hand so the locale cannot leak in."""
    moment = to_utc_aware(moment) if moment.tzinfo is None else moment
    offset = moment.utcoffset()
    minutes = int(offset.total_seconds() // 60) if offset else 0
    sign = "+" if minutes >= 0 else "-"
    minutes = abs(minutes)
    return (
        f"{_WEEKDAYS[moment.weekday()][:3]}, {moment.day:02d} {_MONTHS[moment.month - 1][:3]} {moment.year} "
        f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d} {sign}{minutes // 60:02d}{minutes % 60:02d}"
    )


def encode_header_value(value: str) -> str:
    """ASCII values pass through; anything else becomes RFC 2047 base64 encoded-words."""
    value = " ".join(value.split())
    if value.isascii():
        return value
    words = []
    chunk = ""
    for ch in value:
        # 45 raw bytes -> 60 base64 chars, keeping each encoded-word under 75
        if len((chunk + ch).encode("utf-8")) > 45:
            words.append(chunk)
            chunk = ch
        else:
            chunk += ch
    if chunk:
        words.append(chunk)
    return "\r\n ".join(
        f"=?UTF-8?B?{base64.b64encode(w.encode('utf-8')).decode('ascii')}?=" for w in words
    )


def _check_address(address: str, role: str) -> str:
    address = (address or "").strip()
    if not address or "@" not in address or any(c in address for c in "<>\r\n") or any(c.isspace() for c in address):
        raise ValueError(f"invalid {role} address {address!r}")
    return address


def _encode_body(body: str) -> Tuple[str, str]:
    # DATA stays 7-bit so servers without 8BITMIME accept it
    text = body.replace("\r\n", "\n").replace("\r", "\n")
    raw = text.encode("utf-8")
    if not text.isascii() or max((len(line) for line in raw.split(b"\n")), default=0) > MAX_LINE_BYTES:
        return "base64", base64.encodebytes(raw).decode("ascii").rstrip("\n")
    return "7bit", text


def _attachment_part(attachment: Attachment) -> List[str]:
    filename = attachment.filename.replace('"', "").replace("\r", "").replace("\n", "") or "attachment"
    content_type = attachment.content_type.split(";")[0].strip() or "application/octet-stream"
    return [
        f'Content-Type: {content_type}; name="{filename}"',
        f'Content-Disposition: attachment; filename="{filename}"',
        "Content-Transfer-Encoding: base64",
        "",
        base64.encodebytes(attachment.content).decode("ascii").rstrip("\n"),
        "",
    ]


# --- bodies ---

def render_text_body(reminder: ReminderRecord, scheduled_for: str, brand: str) -> str:
    parts = [f"REMINDER: {reminder.title}", ""]
    if reminder.note:
        parts.extend([reminder.note, ""])
    parts.extend([
        f"Scheduled For: {scheduled_for}",
        "",
        "---",
        f"This is an automated reminder from {brand}.",
    ])
    return "\n".join(parts)


def render_html_body(reminder: ReminderRecord, scheduled_for: str, brand: str, tz: Optional[tzinfo] = None) -> str:
    local = to_utc_aware(reminder.start_date).astimezone(tz or get_zoneinfo())
    title = html.escape(reminder.title)
    note_block = ""
    if reminder.note:
        note_html = "<br>".join(html.escape(line) for line in reminder.note.replace("\r\n", "\n").split("\n"))
        note_block = "\n".join([
            '<div style="margin-bottom:24px;">',
            '  <p style="margin:0;font-size:12px;font-weight:600;color:#9ca3af;text-transform:uppercase;">Description</p>',
            f'  <p style="margin:4px 0 0;font-size:15px;line-height:24px;color:#4b5563;">{note_html}</p>',
            "</div>",
        ])
    return "\n".join([
        "<!DOCTYPE html>",
        '<html lang="en">',
        "<head>",
        '<meta charset="utf-8">',
        f"<title>Reminder: {title}</title>",
        "</head>",
        '<body style="margin:0;padding:0;background-color:#f3f4f6;font-family:\'Segoe UI\',Tahoma,Geneva,Verdana,sans-serif;">',
        '<div style="max-width:600px;margin:20px auto;background:#ffffff;border-radius:12px;">',
        '<div style="padding:20px;text-align:center;background-color:#009B84;border-radius:12px 12px 0 0;">',
        '  <h1 style="margin:0;font-size:24px;color:#ffffff;">Reminder</h1>',
        "</div>",
        '<div style="padding:40px 30px;">',
        f'  <h2 style="margin-top:0;font-size:20px;color:#1f2937;">{title}</h2>',
        '  <div style="margin-bottom:24px;padding:24px;background-color:#f9fafb;border:1px solid #e5e7eb;border-radius:8px;">',
        f'    <div style="font-size:10px;font-weight:bold;color:#EF4444;text-transform:uppercase;">{_MONTHS[local.month - 1][:3].upper()}</div>',
        f'    <div style="font-size:22px;font-weight:bold;color:#1f2937;">{local.day}</div>',
        f'    <p style="margin:8px 0 0;font-size:14px;color:#6b7280;">{html.escape(scheduled_for)}</p>',
        "  </div>",
        note_block,
        "</div>",
        '<div style="padding:30px;text-align:center;font-size:12px;color:#9ca3af;">',
        f"  <p style=\"margin:0;\">This notification was sent via {html.escape(brand)}.</p>",
        "</div>",
        "</div>",
        "</body>",
        "</html>",
    ])


def _new_boundary(token_factory: Callable[[], str], bodies: List[str]) -> str:
    for _ in range(10):
        boundary = f"=_reminder_{token_factory()}"
        if not any(boundary in body for body in bodies):
            return boundary
    raise RuntimeError("could not generate a MIME boundary absent from the message bodies")


def build_message(
    reminder: ReminderRecord,
    recipient: str,
    sender: str,
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    attachment: Optional[Attachment] = None,
    brand: Optional[str] = None,
    token_factory: Optional[Callable[[], str]] = None,
) -> OutboundMessage:
    """Render one reminder email for one recipient."""
    recipient = _check_address(recipient, "recipient")
    sender = _check_address(sender, "sender")
    now = now or now_utc()
    tz = tz or get_zoneinfo()
    brand = brand or settings.BRAND_NAME
    token_factory = token_factory or (lambda: uuid.uuid4().hex)

    scheduled_for = format_schedule(reminder.start_date, tz)
    text_body = render_text_body(reminder, scheduled_for, brand)
    html_body = render_html_body(reminder, scheduled_for, brand, tz)
    subject = f"{SUBJECT_PREFIX}{' '.join(reminder.title.split())}"

    boundary = _new_boundary(token_factory, [text_body, html_body])
    mixed_boundary = _new_boundary(token_factory, [text_body, html_body]) if attachment else None

    domain = sender.rsplit("@", 1)[1]
    headers = (
        ("From", sender),
        ("To", recipient),
        ("Subject", encode_header_value(subject)),
        ("Date", format_date_header(now)),
        ("Message-ID", f"<{token_factory()}@{domain}>"),
    )
    return OutboundMessage(
        sender=sender,
        recipient=recipient,
        subject=subject,
        text_body=text_body,
        html_body=html_body,
        boundary=boundary,
        headers=headers,
        created_at=now,
        attachment=attachment,
        mixed_boundary=mixed_boundary,
    )
