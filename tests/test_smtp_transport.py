import asyncio

import pytest

from app.reminders.errors import MailConfigurationError, SmtpProtocolError
from app.reminders.message_builder import build_message
from app.reminders.records import MailConfigRecord, ReminderRecord
from app.reminders.smtp_transport import (
    SmtpStage,
    SmtpTransport,
    TlsMode,
    dot_stuff,
    frame_data,
    unstuff,
)

from conftest import NOW, PAST, ScriptedConnector, ScriptedSmtpServer, b64, make_transport, run


def _message(note="Due EOD"):
    reminder = ReminderRecord(id="r-1", title="Submit report", note=note, start_date=PAST)
    return build_message(reminder, "alice@example.test", "bot@example.test", now=NOW)


def _config(port=587):
    return MailConfigRecord(host="smtp.example.test", port=port, username="bot@example.test", password="s3cret")


STARTTLS_SEQUENCE = [
    "EHLO client.example.test",
    "STARTTLS",
    "EHLO client.example.test",
    "AUTH LOGIN",
    b64("bot@example.test"),
    b64("s3cret"),
    "MAIL FROM:<bot@example.test>",
    "RCPT TO:<alice@example.test>",
    "DATA",
    "QUIT",
]


class TestTlsMode:
    def test_port_465_is_implicit_tls(self):
        assert TlsMode.for_port(465) is TlsMode.IMPLICIT_TLS

    @pytest.mark.parametrize("port", [25, 587, 2525])
    def test_other_ports_use_starttls(self, port):
        assert TlsMode.for_port(port) is TlsMode.STARTTLS


class TestFraming:
    def test_leading_dot_is_stuffed(self):
        assert dot_stuff(b"hello\r\n.leading dot\r\nbye\r\n") == b"hello\r\n..leading dot\r\nbye\r\n"

    def test_bare_newlines_become_crlf(self):
        assert dot_stuff(b"a\nb\rc") == b"a\r\nb\r\nc\r\n"

    def test_lone_period_line_cannot_terminate_early(self):
        framed = frame_data(b"first\r\n.\r\nlast\r\n")
        assert framed == b"first\r\n..\r\nlast\r\n.\r\n"
        assert framed.count(b"\r\n.\r\n") == 1
        assert framed.endswith(b"\r\n.\r\n")

    def test_unstuff_recovers_original_lines(self):
        original = b"From: a@b\r\n\r\n.leading dot\r\n..two dots\r\nplain\r\n"
        assert unstuff(dot_stuff(original)) == original

    def test_empty_payload_is_just_the_terminator(self):
        assert frame_data(b"") == b".\r\n"


class TestProtocolSequence:
    def test_starttls_path_issues_commands_in_order(self, smtp_server):
        connector = ScriptedConnector(smtp_server)
        reply = run(make_transport(connector).send(_message(), _config(587)))

        assert reply.code == 250
        assert smtp_server.commands == STARTTLS_SEQUENCE
        assert connector.opened == [("smtp.example.test", 587, False)]
        # the handshake sits between STARTTLS and the second EHLO
        tls_at = smtp_server.tls_handshakes()[0]
        assert smtp_server.events[tls_at - 1][1] == "STARTTLS"
        assert smtp_server.events[tls_at + 1][1] == "EHLO client.example.test"
        assert smtp_server.connections[0].closed

    def test_implicit_tls_path_skips_starttls(self, smtp_server):
        connector = ScriptedConnector(smtp_server)
        run(make_transport(connector).send(_message(), _config(465)))

        assert connector.opened == [("smtp.example.test", 465, True)]
        assert smtp_server.tls_handshakes() == []
        assert smtp_server.commands == [
            "EHLO client.example.test",
            "AUTH LOGIN",
            b64("bot@example.test"),
            b64("s3cret"),
            "MAIL FROM:<bot@example.test>",
            "RCPT TO:<alice@example.test>",
            "DATA",
            "QUIT",
        ]

    def test_multiline_ehlo_reply_is_consumed_whole(self):
        server = ScriptedSmtpServer(ehlo="250-one\r\n250-two\r\n250-three\r\n250 four")
        run(make_transport(ScriptedConnector(server)).send(_message(), _config(587)))
        assert server.commands == STARTTLS_SEQUENCE

    def test_rcpt_251_is_accepted(self):
        server = ScriptedSmtpServer(rcpt="251 User not local; will forward")
        reply = run(make_transport(ScriptedConnector(server)).send(_message(), _config(587)))
        assert reply.code == 250

    def test_quit_reply_does_not_change_outcome(self):
        server = ScriptedSmtpServer(quit="500 whatever")
        reply = run(make_transport(ScriptedConnector(server)).send(_message(), _config(587)))
        assert reply.code == 250
        assert server.connections[0].closed

    def test_message_is_dot_stuffed_on_the_wire(self, smtp_server):
        message = _message(note=".leading dot")
        run(make_transport(ScriptedConnector(smtp_server)).send(message, _config(587)))

        payload = smtp_server.data_payloads[0]
        assert b"\r\n..leading dot\r\n" in payload
        assert b"\r\n.leading dot\r\n" not in payload
        recovered = unstuff(payload)
        assert b"\r\n.leading dot\r\n" in recovered
        assert recovered == message.as_bytes()


EARLY_ABORTS = [
    ("greeting", "554 5.3.2 Service not available", "greeting", []),
    ("ehlo", "502 5.5.1 EHLO not supported", "ehlo", ["EHLO client.example.test"]),
    ("starttls", "454 4.7.0 TLS not available", "starttls", ["EHLO client.example.test", "STARTTLS"]),
    ("ehlo_tls", "421 4.3.0 Try later", "starttls", STARTTLS_SEQUENCE[:3]),
    ("auth", "504 5.5.4 Unrecognized authentication type", "auth", STARTTLS_SEQUENCE[:4]),
    ("auth_user", "535 5.7.8 Bad username", "auth", STARTTLS_SEQUENCE[:5]),
    ("auth_pass", "535 5.7.8 Authentication credentials invalid", "auth", STARTTLS_SEQUENCE[:6]),
    ("mail", "550 5.7.1 Sender rejected", "mail-from", STARTTLS_SEQUENCE[:7]),
    ("rcpt", "550 5.1.1 No such user", "rcpt-to", STARTTLS_SEQUENCE[:8]),
    ("data", "554 5.5.1 No valid recipients", "data-start", STARTTLS_SEQUENCE[:9]),
    ("transmit", "552 5.3.4 Message too big", "transmit", STARTTLS_SEQUENCE[:9]),
]


class TestEarlyAbort:
    @pytest.mark.parametrize("key,bad_reply,stage,sent", EARLY_ABORTS, ids=[a[0] for a in EARLY_ABORTS])
    def test_unexpected_code_stops_the_session(self, key, bad_reply, stage, sent):
        server = ScriptedSmtpServer(**{key: bad_reply})
        with pytest.raises(SmtpProtocolError) as exc_info:
            run(make_transport(ScriptedConnector(server)).send(_message(), _config(587)))

        err = exc_info.value
        assert err.stage == stage
        assert err.code == int(bad_reply[:3])
        assert err.response == bad_reply
        assert server.commands == sent
        assert "QUIT" not in server.commands
        assert server.connections[0].closed

    def test_ehlo_failure_never_reaches_auth(self):
        server = ScriptedSmtpServer(ehlo="550 go away")
        with pytest.raises(SmtpProtocolError):
            run(make_transport(ScriptedConnector(server)).send(_message(), _config(465)))
        assert "AUTH LOGIN" not in server.commands

    def test_connection_closed_mid_session(self):
        server = ScriptedSmtpServer(mail=None)
        with pytest.raises(SmtpProtocolError) as exc_info:
            run(make_transport(ScriptedConnector(server)).send(_message(), _config(587)))
        assert exc_info.value.stage == "mail-from"
        assert "closed" in str(exc_info.value)

    def test_malformed_reply(self):
        server = ScriptedSmtpServer(greeting="hello there")
        with pytest.raises(SmtpProtocolError) as exc_info:
            run(make_transport(ScriptedConnector(server)).send(_message(), _config(587)))
        assert exc_info.value.stage == "greeting"

    def test_inconsistent_multiline_codes(self):
        server = ScriptedSmtpServer(ehlo="250-first\r\n220 second")
        with pytest.raises(SmtpProtocolError) as exc_info:
            run(make_transport(ScriptedConnector(server)).send(_message(), _config(587)))
        assert exc_info.value.stage == "ehlo"

    def test_connect_error(self, smtp_server):
        connector = ScriptedConnector(smtp_server, connect_error=ConnectionRefusedError("refused"))
        with pytest.raises(SmtpProtocolError) as exc_info:
            run(make_transport(connector).send(_message(), _config(587)))
        assert exc_info.value.stage == "connect"
        assert smtp_server.commands == []

    def test_handshake_error_is_a_starttls_failure(self, smtp_server):
        connector = ScriptedConnector(smtp_server, fail_handshake=OSError("handshake reset"))
        with pytest.raises(SmtpProtocolError) as exc_info:
            run(make_transport(connector).send(_message(), _config(587)))
        assert exc_info.value.stage == "starttls"
        assert smtp_server.commands == ["EHLO client.example.test", "STARTTLS"]

    def test_invalid_config_fails_before_connecting(self, smtp_server):
        connector = ScriptedConnector(smtp_server)
        with pytest.raises(MailConfigurationError):
            run(make_transport(connector).send(_message(), MailConfigRecord(host="", port=587, username="x@y")))
        assert connector.opened == []


class TestTlsGating:
    @pytest.mark.parametrize("port", [465, 587])
    def test_credentials_only_cross_an_encrypted_channel(self, smtp_server, port):
        run(make_transport(ScriptedConnector(smtp_server)).send(_message(), _config(port)))

        commands = [e for e in smtp_server.events if e[0] == "cmd"]
        auth_at = [c[1] for c in commands].index("AUTH LOGIN")
        for _, line, tls_active in commands[auth_at:]:
            assert tls_active, f"{line!r} was sent in plaintext"
        if port == 587:
            first_auth_event = next(i for i, e in enumerate(smtp_server.events) if e[0] == "cmd" and e[1] == "AUTH LOGIN")
            assert smtp_server.tls_handshakes()[0] < first_auth_event

    def test_refuses_credentials_when_handshake_did_not_secure_the_channel(self, smtp_server):
        connector = ScriptedConnector(smtp_server, fake_handshake=True)
        with pytest.raises(SmtpProtocolError) as exc_info:
            run(make_transport(connector).send(_message(), _config(587)))
        assert exc_info.value.stage == "starttls"
        assert "AUTH LOGIN" not in smtp_server.commands
        assert b64("s3cret") not in smtp_server.commands


class _SilentConnection:
    tls_active = False

    def __init__(self):
        self.closed = False

    async def readline(self):
        await asyncio.Event().wait()

    async def write(self, data):
        return None

    async def start_tls(self, ssl_context, server_hostname):
        return None

    async def close(self):
        self.closed = True


class _SilentConnector:
    def __init__(self):
        self.connection = _SilentConnection()

    async def open(self, host, port, *, implicit_tls, ssl_context):
        return self.connection


def test_read_timeout_fails_the_current_stage():
    connector = _SilentConnector()
    transport = SmtpTransport(connector=connector, timeout=0.05, local_hostname="client.example.test")
    with pytest.raises(SmtpProtocolError) as exc_info:
        run(transport.send(_message(), _config(587)))
    assert exc_info.value.stage == SmtpStage.GREETING.value
    assert "timed out" in str(exc_info.value)
    assert connector.connection.closed


class TestLoopbackServer:
    """Real sockets on 127.0.0.1 for the plaintext part of the exchange."""

    def _serve(self, replies):
        received = []

        async def handler(reader, writer):
            writer.write(replies[0])
            await writer.drain()
            for reply in replies[1:]:
                line = await reader.readline()
                if not line:
                    break
                received.append(line.decode("ascii").rstrip("\r\n"))
                writer.write(reply)
                await writer.drain()
            # drain anything else the client sends until it hangs up
            while True:
                line = await reader.readline()
                if not line:
                    break
                received.append(line.decode("ascii").rstrip("\r\n"))
            writer.close()

        return handler, received

    def _send_to(self, handler):
        async def scenario():
            server = await asyncio.start_server(handler, "127.0.0.1", 0)
            port = server.sockets[0].getsockname()[1]
            try:
                transport = SmtpTransport(timeout=2.0, local_hostname="client.example.test")
                config = MailConfigRecord(host="127.0.0.1", port=port, username="bot@example.test", password="pw")
                await transport.send(_message(), config)
            finally:
                server.close()
                await server.wait_closed()

        run(scenario())

    def test_greeting_rejection_over_tcp(self):
        handler, received = self._serve([b"554 5.3.2 No service\r\n"])
        with pytest.raises(SmtpProtocolError) as exc_info:
            self._send_to(handler)
        assert exc_info.value.stage == "greeting"
        assert exc_info.value.response == "554 5.3.2 No service"
        assert received == []

    def test_refused_starttls_never_exposes_credentials(self):
        handler, received = self._serve([
            b"220 ready\r\n",
            b"250-loopback\r\n250 STARTTLS\r\n",
            b"454 4.7.0 TLS not available\r\n",
        ])
        with pytest.raises(SmtpProtocolError) as exc_info:
            self._send_to(handler)
        assert exc_info.value.stage == "starttls"
        assert received == ["EHLO client.example.test", "STARTTLS"]
