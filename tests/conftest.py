import asyncio
import base64
import os
from datetime import datetime, timezone

os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite://")
os.environ.setdefault("REMINDER_SCHEDULER_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.reminders import models  # noqa: F401
from app.reminders.records import MailConfigRecord, ReminderRecord
from app.reminders.smtp_transport import SmtpTransport


CRLF = b"\r\n"

DEFAULT_REPLIES = {
    "greeting": "220 smtp.example.test ESMTP ready",
    "ehlo": "250-smtp.example.test\r\n250-STARTTLS\r\n250-AUTH LOGIN PLAIN\r\n250 8BITMIME",
    "starttls": "220 2.0.0 Ready to start TLS",
    "ehlo_tls": "250-smtp.example.test\r\n250-AUTH LOGIN PLAIN\r\n250 8BITMIME",
    "auth": "334 VXNlcm5hbWU6",
    "auth_user": "334 UGFzc3dvcmQ6",
    "auth_pass": "235 2.7.0 Authentication successful",
    "mail": "250 2.1.0 Ok",
    "rcpt": "250 2.1.5 Ok",
    "data": "354 End data with <CR><LF>.<CR><LF>",
    "transmit": "250 2.0.0 Ok: queued as 12345",
    "quit": "221 2.0.0 Bye",
}


class ScriptedSmtpServer:
    """In-memory SMTP peer that answers each client line from a reply table.

    ``events`` records ("cmd", line, tls_active), ("tls",) and ("data", payload)
    in wire order so tests can check sequencing and TLS gating.
    """

    def __init__(self, **overrides):
        self.replies = dict(DEFAULT_REPLIES)
        self.replies.update(overrides)
        self.events = []
        self.connections = []

    @property
    def commands(self):
        return [e[1] for e in self.events if e[0] == "cmd"]

    @property
    def data_payloads(self):
        return [e[1] for e in self.events if e[0] == "data"]

    def tls_handshakes(self):
        return [i for i, e in enumerate(self.events) if e[0] == "tls"]


class ScriptedConnection:
    def __init__(self, server, tls_active, fail_handshake=None, fake_handshake=False):
        self.server = server
        self.tls_active = tls_active
        self.closed = False
        self._outbox = []
        self._buffer = b""
        self._in_data = False
        self._auth_step = None
        self._fail_handshake = fail_handshake
        self._fake_handshake = fake_handshake
        self._queue("greeting")

    def _queue(self, key):
        reply = self.server.replies[key]
        if reply is None:
            return
        for line in reply.split("\r\n"):
            self._outbox.append(line.encode("utf-8") + CRLF)

    async def readline(self):
        if not self._outbox:
            return b""
        return self._outbox.pop(0)

    async def write(self, data):
        self._buffer += data
        while True:
            if self._in_data:
                end = self._buffer.find(b"\r\n.\r\n")
                if self._buffer.startswith(b".\r\n"):
                    payload, self._buffer = b"", self._buffer[3:]
                elif end == -1:
                    return
                else:
                    payload, self._buffer = self._buffer[: end + 2], self._buffer[end + 5:]
                self.server.events.append(("data", payload))
                self._in_data = False
                self._queue("transmit")
                continue
            if CRLF not in self._buffer:
                return
            raw, self._buffer = self._buffer.split(CRLF, 1)
            self._handle(raw.decode("ascii"))

    def _handle(self, line):
        self.server.events.append(("cmd", line, self.tls_active))
        upper = line.upper()
        if self._auth_step == "user":
            self._auth_step = "pass"
            self._queue("auth_user")
        elif self._auth_step == "pass":
            self._auth_step = None
            self._queue("auth_pass")
        elif upper.startswith("EHLO"):
            self._queue("ehlo_tls" if self.tls_active and self.server.tls_handshakes() else "ehlo")
        elif upper == "STARTTLS":
            self._queue("starttls")
        elif upper == "AUTH LOGIN":
            self._auth_step = "user"
            self._queue("auth")
        elif upper.startswith("MAIL FROM"):
            self._queue("mail")
        elif upper.startswith("RCPT TO"):
            self._queue("rcpt")
        elif upper == "DATA":
            if self.server.replies["data"].startswith("354"):
                self._in_data = True
            self._queue("data")
        elif upper == "QUIT":
            self._queue("quit")
        else:
            self._outbox.append(b"500 unrecognised command\r\n")

    async def start_tls(self, ssl_context, server_hostname):
        if self._fail_handshake is not None:
            raise self._fail_handshake
        self.server.events.append(("tls",))
        if not self._fake_handshake:
            self.tls_active = True

    async def close(self):
        self.closed = True


class ScriptedConnector:
    def __init__(self, server, connect_error=None, fail_handshake=None, fake_handshake=False):
        self.server = server
        self.connect_error = connect_error
        self.fail_handshake = fail_handshake
        self.fake_handshake = fake_handshake
        self.opened = []

    async def open(self, host, port, *, implicit_tls, ssl_context):
        self.opened.append((host, port, implicit_tls))
        if self.connect_error is not None:
            raise self.connect_error
        conn = ScriptedConnection(
            self.server, implicit_tls, fail_handshake=self.fail_handshake, fake_handshake=self.fake_handshake
        )
        self.server.connections.append(conn)
        return conn


def b64(value):
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def make_transport(connector, **kwargs):
    kwargs.setdefault("timeout", 2.0)
    kwargs.setdefault("local_hostname", "client.example.test")
    return SmtpTransport(connector=connector, **kwargs)


def run(coro):
    return asyncio.run(coro)


class ManualTicker:
    """Scheduler tick source; each tick() releases exactly one pending wait()."""

    def __init__(self):
        self._ticks = asyncio.Queue()
        self.waits = 0

    async def wait(self, interval):
        self.waits += 1
        await self._ticks.get()

    def tick(self, count=1):
        for _ in range(count):
            self._ticks.put_nowait(None)


async def wait_for_cycles(scheduler, count, timeout=2.0):
    """Poll until the scheduler has completed at least ``count`` cycles."""

    async def _poll():
        while scheduler.cycles < count:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


PAST = datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc)
NOW = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

MAIL_CONFIG = MailConfigRecord(host="smtp.example.test", port=587, username="bot@example.test", password="s3cret")


@pytest.fixture
def smtp_server():
    return ScriptedSmtpServer()


@pytest.fixture
def mail_config():
    return MAIL_CONFIG


@pytest.fixture
def reminder():
    return ReminderRecord(id="r-1", title="Submit report", note="Due EOD", start_date=PAST)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


class InMemoryStore:
    def __init__(self, reminders=(), config=MAIL_CONFIG, recipient="alice@example.test"):
        self.reminders = {r.id: r for r in reminders}
        self.config = config
        self.recipient = recipient
        self.notified = set()
        self.mark_calls = []
        self.mark_error = None

    def list_due_unnotified_reminders(self, now):
        return [r for r in self.reminders.values() if r.start_date <= now and r.id not in self.notified]

    def get_active_reminder_mail_config(self):
        return self.config

    def mark_reminder_notified(self, reminder_id):
        self.mark_calls.append(reminder_id)
        if self.mark_error is not None:
            raise self.mark_error
        self.notified.add(reminder_id)

    def get_current_recipient_address(self):
        return self.recipient


