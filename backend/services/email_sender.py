"""
Email transport used by the notification dispatcher.

SmtpEmailSender hands messages to an SMTP relay (STARTTLS + login when
configured). LoggingEmailSender is the development fallback when no
SMTP_HOST is set.
"""
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from exceptions import EmailDeliveryError
from services.async_executor import run_blocking

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send(self, *, recipient: str, subject: str, body: str) -> None: ...


def build_message(*, sender: str, recipient: str, subject: str, body: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = recipient
    msg["Subject"] = subject
    msg.set_content(body)
    return msg


class SmtpEmailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        self._host = host
        self._port = port
        self._sender = sender
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._timeout = timeout

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._use_tls:
                smtp.starttls()
            if self._username and self._password:
                smtp.login(self._username, self._password)
            smtp.send_message(msg)

    async def send(self, *, recipient: str, subject: str, body: str) -> None:
        msg = build_message(sender=self._sender, recipient=recipient, subject=subject, body=body)
        try:
            await run_blocking(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(f"SMTP delivery to {recipient} failed: {e}") from e


class LoggingEmailSender:
    """Writes emails to the log instead of sending them."""

    async def send(self, *, recipient: str, subject: str, body: str) -> None:
        logger.info(f"  📧 [email not sent, SMTP_HOST unset] to={recipient} subject={subject!r}")
        logger.debug(body)
