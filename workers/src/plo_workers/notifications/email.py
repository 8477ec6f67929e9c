"""E-mail transport for alerts.

``SmtpEmailTransport`` sends multipart (text + HTML) mail through smtplib in a
worker thread. Without an SMTP host configured, ``LoggingEmailTransport``
writes the message to the log instead. Neither raises on delivery failure:
``send`` returns ``False`` and the caller records the notification as failed.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from ..config import Config

logger = logging.getLogger(__name__)


class EmailTransport(Protocol):
    async def send(self, to: list[str], subject: str, html: str, text: str | None = None) -> bool: ...


class SmtpEmailTransport:
    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        sender: str = "plo-alerts@example.fr",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def _build_message(self, to: list[str], subject: str, html: str, text: str | None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = ", ".join(to)
        if text:
            msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def _send_sync(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.port != 25:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(msg)

    async def send(self, to: list[str], subject: str, html: str, text: str | None = None) -> bool:
        if not to:
            logger.warning("Email %r has no recipients; not sent", subject)
            return False
        msg = self._build_message(to, subject, html, text)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email delivery failed (%s): %s", subject, exc)
            return False
        logger.info("Email sent to %s: %s", ", ".join(to), subject)
        return True


class LoggingEmailTransport:
    async def send(self, to: list[str], subject: str, html: str, text: str | None = None) -> bool:
        logger.info(
            "SMTP not configured; email for %s logged only: %s",
            ", ".join(to) or "<nobody>",
            subject,
            extra={"plo_email_body": text or html},
        )
        return True


def build_email_transport(config: Config) -> EmailTransport:
    if not config.smtp_host:
        return LoggingEmailTransport()
    return SmtpEmailTransport(
        host=config.smtp_host,
        port=config.smtp_port,
        user=config.smtp_user,
        password=config.smtp_password,
        sender=config.smtp_from,
    )
