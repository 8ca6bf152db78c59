"""Exceptions raised by the reminder delivery pipeline."""
from typing import Optional


class ReminderMailerError(Exception):
    """Base class for reminder delivery errors."""


class MailConfigurationError(ReminderMailerError):
    """The mail configuration cannot be used to open a session."""


class SmtpProtocolError(ReminderMailerError):
    """An SMTP session was abandoned at ``stage``.

    ``code`` is the last reply code seen (None when the failure was a
    connect error, timeout or reset), ``response`` the raw server text.
    """

    def __init__(self, stage: str, message: str, code: Optional[int] = None, response: str = "") -> None:
        self.stage = stage
        self.reason = message
        self.code = code
        self.response = response
        super().__init__(f"{stage}: {message}")

    @property
    def detail(self) -> str:
        """Server text when there is one, otherwise the local reason."""
        return self.response or self.reason


class DeliveryError(ReminderMailerError):
    """Delivery of one reminder failed; carries the failing stage and server text."""

    def __init__(self, stage: str, detail: str, reminder_id: Optional[str] = None) -> None:
        self.stage = stage
        self.detail = detail
        self.reminder_id = reminder_id
        super().__init__(f"{stage}: {detail}")
