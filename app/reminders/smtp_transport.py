"""
SMTP transport - one message over one freshly opened connection.

The session walks a fixed sequence of stages:

    connect -> greeting -> ehlo -> [starttls] -> auth -> mail-from
            -> rcpt-to -> data-start -> transmit -> quit

Every reply is checked against the codes expected for the current stage. Any
other code, a reset, EOF or a timeout abandons the session: nothing further is
written, the socket is closed and SmtpProtocolError carries the stage name and
the raw server text. There are no retries here; the dispatcher's next cycle is
the only retry mechanism.

Port 465 is implicit TLS. Every other port starts in plaintext and must be
upgraded with STARTTLS before credentials go out.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import socket
import ssl
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable, Optional, Protocol

from .config import settings
from .errors import MailConfigurationError, SmtpProtocolError
from .records import MailConfigRecord

if TYPE_CHECKING:  # pragma: no cover
    from .message_builder import OutboundMessage


logger = logging.getLogger(__name__)

CRLF = b"\r\n"
IMPLICIT_TLS_PORT = 465


class TlsMode(str, Enum):
    """How a connection gets encrypted; chosen by port."""

    IMPLICIT_TLS = "implicit_tls"
    STARTTLS = "starttls"

    @classmethod
    def for_port(cls, port: int) -> "TlsMode":
        if int(port) == IMPLICIT_TLS_PORT:
            return cls.IMPLICIT_TLS
        return cls.STARTTLS


class SmtpStage(str, Enum):
    CONNECT = "connect"
    GREETING = "greeting"
    EHLO = "ehlo"
    STARTTLS = "starttls"
    AUTH = "auth"
    MAIL_FROM = "mail-from"
    RCPT_TO = "rcpt-to"
    DATA_START = "data-start"
    TRANSMIT = "transmit"
    QUIT = "quit"


@dataclass(frozen=True)
class SmtpReply:
    code: int
    lines: tuple

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def raw(self) -> str:
        if not self.lines:
            return str(self.code)
        last = len(self.lines) - 1
        return "\n".join(
            f"{self.code}{' ' if i == last else '-'}{line}" for i, line in enumerate(self.lines)
        )


# --- DATA framing ---

def dot_stuff(data: bytes) -> bytes:
    """Normalise line endings to CRLF and escape lines that start with '.'.

    The result always ends with CRLF (unless empty) so the end-of-data marker
    can follow directly.
    """
    normalized = data.replace(b"\r\n", b"\n").replace(b"\r", b"\n")
    lines = normalized.split(b"\n")
    if lines and lines[-1] == b"":
        lines.pop()
    return b"".join((b"." + line if line.startswith(b".") else line) + CRLF for line in lines)


def frame_data(data: bytes) -> bytes:
    """Dot-stuffed payload followed by the lone-period terminator line."""
    return dot_stuff(data) + b"." + CRLF


def unstuff(payload: bytes) -> bytes:
    """Reverse of dot_stuff, as a receiving server applies it."""
    lines = payload.split(CRLF)
    if lines and lines[-1] == b"":
        lines.pop()
    return b"".join((line[1:] if line.startswith(b".") else line) + CRLF for line in lines)


# --- connections ---

class SmtpConnection(Protocol):
    tls_active: bool

    async def readline(self) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    async def start_tls(self, ssl_context: ssl.SSLContext, server_hostname: str) -> None: ...

    async def close(self) -> None: ...


class SmtpConnector(Protocol):
    async def open(
        self, host: str, port: int, *, implicit_tls: bool, ssl_context: ssl.SSLContext
    ) -> SmtpConnection: ...


class StreamConnection:
    """SmtpConnection over asyncio streams."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, tls_active: bool) -> None:
        self._reader = reader
        self._writer = writer
        self.tls_active = tls_active

    async def readline(self) -> bytes:
        return await self._reader.readline()

    async def write(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def start_tls(self, ssl_context: ssl.SSLContext, server_hostname: str) -> None:
        await self._writer.start_tls(ssl_context, server_hostname=server_hostname)
        self.tls_active = True

    async def close(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ssl.SSLError) as exc:
            logger.debug(f"[SMTP] Ignoring error while closing socket: {exc!r}")


class AsyncioConnector:
    """Opens real TCP connections, TLS-wrapped from the start when asked."""

    async def open(
        self, host: str, port: int, *, implicit_tls: bool, ssl_context: ssl.SSLContext
    ) -> StreamConnection:
        if implicit_tls:
            reader, writer = await asyncio.open_connection(
                host, port, ssl=ssl_context, server_hostname=host
            )
        else:
            reader, writer = await asyncio.open_connection(host, port)
        return StreamConnection(reader, writer, tls_active=implicit_tls)


# --- session ---

class SmtpSession:
    """Protocol state for one connection. Stages only move forward."""

    def __init__(self, connection: SmtpConnection, timeout: float) -> None:
        self.connection = connection
        self.timeout = timeout
        self.stage = SmtpStage.GREETING
        self.last_code: Optional[int] = None
        self.last_response = ""
        self._order = list(SmtpStage)

    @property
    def tls_active(self) -> bool:
        return bool(self.connection.tls_active)

    def advance(self, stage: SmtpStage) -> None:
        if self._order.index(stage) < self._order.index(self.stage):
            raise RuntimeError(f"SMTP session cannot move back from {self.stage.value} to {stage.value}")
        self.stage = stage

    def fail(self, message: str, code: Optional[int] = None, response: str = "") -> SmtpProtocolError:
        return SmtpProtocolError(self.stage.value, message, code=code, response=response)

    async def _readline(self) -> bytes:
        try:
            raw = await asyncio.wait_for(self.connection.readline(), self.timeout)
        except asyncio.TimeoutError:
            raise self.fail(f"timed out after {self.timeout:g}s waiting for server reply") from None
        except (ConnectionError, OSError, ssl.SSLError) as exc:
            raise self.fail(f"connection lost: {exc}") from exc
        except (asyncio.LimitOverrunError, ValueError) as exc:
            raise self.fail(f"reply line too long: {exc}") from exc
        if not raw:
            raise self.fail("connection closed by server")
        return raw

    async def read_reply(self, expected: Iterable[int]) -> SmtpReply:
        expected = set(expected)
        code: Optional[int] = None
        lines = []
        while True:
            line = (await self._readline()).decode("utf-8", errors="replace").rstrip("\r\n")
            if len(line) < 3 or not line[:3].isdigit() or (len(line) > 3 and line[3] not in " -"):
                raise self.fail(f"malformed reply {line!r}", response=line)
            line_code = int(line[:3])
            if code is None:
                code = line_code
            elif line_code != code:
                raise self.fail(f"inconsistent multi-line reply {line!r}", code=line_code, response=line)
            lines.append(line[4:])
            if len(line) == 3 or line[3] == " ":
                break

        reply = SmtpReply(code=code, lines=tuple(lines))
        self.last_code = reply.code
        self.last_response = reply.raw
        logger.debug(f"[SMTP] < {reply.raw}")
        if reply.code not in expected:
            wanted = "/".join(str(c) for c in sorted(expected))
            raise self.fail(f"unexpected reply {reply.code} (expected {wanted})", code=reply.code, response=reply.raw)
        return reply

    async def write(self, data: bytes) -> None:
        try:
            await asyncio.wait_for(self.connection.write(data), self.timeout)
        except asyncio.TimeoutError:
            raise self.fail(f"timed out after {self.timeout:g}s writing to server") from None
        except (ConnectionError, OSError, ssl.SSLError) as exc:
            raise self.fail(f"connection lost: {exc}") from exc

    async def command(self, line: str, expected: Iterable[int], *, redact: bool = False) -> SmtpReply:
        if "\r" in line or "\n" in line:
            raise self.fail("refusing to send a command containing a line break")
        try:
            encoded = line.encode("ascii")
        except UnicodeEncodeError:
            raise self.fail("refusing to send a command with non-ASCII characters") from None
        logger.debug(f"[SMTP] > {'****' if redact else line}")
        await self.write(encoded + CRLF)
        return await self.read_reply(expected)

    async def close(self) -> None:
        await self.connection.close()


# --- transport ---

def _default_local_hostname() -> str:
    name = settings.SMTP_LOCAL_HOSTNAME or socket.getfqdn() or "localhost"
    if not name.isascii() or any(ch.isspace() for ch in name):
        return "localhost"
    return name


def validate_mail_config(config: MailConfigRecord) -> None:
    if not config.host or not str(config.host).strip():
        raise MailConfigurationError("mail configuration has no host")
    if not 1 <= int(config.port) <= 65535:
        raise MailConfigurationError(f"mail configuration has invalid port {config.port}")
    if not config.username:
        raise MailConfigurationError("mail configuration has no username")


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


class SmtpTransport:
    """Sends exactly one message per call over a new connection."""

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        local_hostname: Optional[str] = None,
        connector: Optional[SmtpConnector] = None,
        ssl_context_factory: Optional[Callable[[], ssl.SSLContext]] = None,
    ) -> None:
        self.timeout = float(timeout if timeout is not None else settings.SMTP_TIMEOUT_SECONDS)
        self.local_hostname = local_hostname or _default_local_hostname()
        self.connector = connector or AsyncioConnector()
        self.ssl_context_factory = ssl_context_factory or ssl.create_default_context

    async def send(self, message: "OutboundMessage", config: MailConfigRecord) -> SmtpReply:
        """Run one full transaction; returns the server's reply to the message data."""
        validate_mail_config(config)
        mode = TlsMode.for_port(config.port)
        session = await self._connect(config, mode)
        try:
            await session.read_reply({220})

            session.advance(SmtpStage.EHLO)
            await session.command(f"EHLO {self.local_hostname}", {250})

            if not session.tls_active:
                session.advance(SmtpStage.STARTTLS)
                await self._starttls(session, config.host)

            session.advance(SmtpStage.AUTH)
            await self._authenticate(session, config)

            session.advance(SmtpStage.MAIL_FROM)
            await session.command(f"MAIL FROM:<{message.sender}>", {250})

            session.advance(SmtpStage.RCPT_TO)
            await session.command(f"RCPT TO:<{message.recipient}>", {250, 251})

            session.advance(SmtpStage.DATA_START)
            await session.command("DATA", {354})

            session.advance(SmtpStage.TRANSMIT)
            await session.write(frame_data(message.as_bytes()))
            accepted = await session.read_reply({250})

            session.advance(SmtpStage.QUIT)
            await self._quit(session)
            logger.info(f"[SMTP] Message accepted by {config.host}:{config.port} for {message.recipient}")
            return accepted
        except SmtpProtocolError as exc:
            logger.warning(f"[SMTP] Session with {config.host}:{config.port} failed at {exc.stage}: {exc}")
            raise
        finally:
            await session.close()

    async def _connect(self, config: MailConfigRecord, mode: TlsMode) -> SmtpSession:
        implicit = mode is TlsMode.IMPLICIT_TLS
        logger.debug(f"[SMTP] Connecting to {config.host}:{config.port} ({mode.value})")
        try:
            connection = await asyncio.wait_for(
                self.connector.open(
                    config.host, int(config.port), implicit_tls=implicit, ssl_context=self.ssl_context_factory()
                ),
                self.timeout,
            )
        except asyncio.TimeoutError:
            raise SmtpProtocolError(
                SmtpStage.CONNECT.value, f"timed out after {self.timeout:g}s connecting to {config.host}:{config.port}"
            ) from None
        except (OSError, ssl.SSLError) as exc:
            raise SmtpProtocolError(
                SmtpStage.CONNECT.value, f"could not connect to {config.host}:{config.port}: {exc}"
            ) from exc
        return SmtpSession(connection, self.timeout)

    async def _starttls(self, session: SmtpSession, host: str) -> None:
        await session.command("STARTTLS", {220})
        try:
            await asyncio.wait_for(
                session.connection.start_tls(self.ssl_context_factory(), server_hostname=host), self.timeout
            )
        except asyncio.TimeoutError:
            raise session.fail(f"TLS handshake timed out after {self.timeout:g}s") from None
        except (OSError, ssl.SSLError) as exc:
            raise session.fail(f"TLS handshake failed: {exc}") from exc
        if not session.tls_active:
            raise session.fail("connection did not report TLS after the handshake")
        logger.debug("[SMTP] Upgraded to TLS via STARTTLS")
        # capabilities must be re-read on the encrypted channel
        await session.command(f"EHLO {self.local_hostname}", {250})

    async def _authenticate(self, session: SmtpSession, config: MailConfigRecord) -> None:
        if not session.tls_active:
            raise session.fail("refusing to send credentials over an unencrypted connection")
        await session.command("AUTH LOGIN", {334})
        await session.command(_b64(config.username), {334}, redact=True)
        await session.command(_b64(config.password), {235}, redact=True)

    async def _quit(self, session: SmtpSession) -> None:
        # The message is already accepted; the QUIT reply does not change the outcome.
        try:
            await session.command("QUIT", {221})
        except SmtpProtocolError as exc:
            logger.debug(f"[SMTP] Ignoring QUIT failure: {exc}")
