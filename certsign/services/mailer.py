"""Outbound email."""

from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Protocol

from loguru import logger

from certsign.core.concurrency import ThreadLimiter


class MailerError(RuntimeError):
    """The message could not be handed to the mail server."""


class Mailer(Protocol):
    async def send(self, to: str, subject: str, text: str) -> None: ...


class SmtpMailer:
    """Plaintext mail over SMTP, run in a worker thread."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        sender: str,
        starttls: bool = True,
        timeout: float = 30.0,
        limiter: ThreadLimiter | None = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self.sender = sender
        self.starttls = starttls
        self.timeout = timeout
        self._limiter = limiter or ThreadLimiter(4)

    def _build_message(self, to: str, subject: str, text: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.starttls:
                server.starttls()
            if self.username:
                server.login(self.username, self._password)
            server.send_message(msg)

    async def send(self, to: str, subject: str, text: str) -> None:
        msg = self._build_message(to, subject, text)
        try:
            await self._limiter.run(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailerError(f"Unable to send email to '{to}': {exc}") from exc
        logger.bind(to=to, smtp_host=self.host).info("email_sent")
