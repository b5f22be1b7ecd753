"""
Notification dispatcher - SMTP delivery with retries
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Awaitable, Callable

from utils.errors import NotificationError

logger = logging.getLogger(__name__)


class SMTPMailer:
    """
    Thin transport over smtplib.
    Port 465 speaks implicit TLS; any other port is upgraded with STARTTLS.
    """

    def __init__(self, host: str, port: int, user: str, password: str, timeout: float = 30.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            smtp.starttls()
        smtp.login(self.user, self.password)
        return smtp

    def _send(self, message: EmailMessage) -> str:
        with self._connect() as smtp:
            smtp.send_message(message)
        return message["Message-ID"] or ""

    def _verify(self) -> None:
        with self._connect() as smtp:
            smtp.noop()

    async def send(self, message: EmailMessage) -> str:
        return await asyncio.to_thread(self._send, message)

    async def verify(self) -> None:
        await asyncio.to_thread(self._verify)


class NotificationDispatcher:
    """
    Sends caller-built messages, retrying transport failures.

    Content-agnostic: templates live in services.email_templates.
    Exhausting the retries raises NotificationError; delivery is never
    silently dropped.
    """

    def __init__(
        self,
        mailer,
        sender: str,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.mailer = mailer
        self.sender = sender
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def send(self, message: EmailMessage) -> str:
        if message["From"] is None:
            message["From"] = self.sender

        for attempt in range(1, self.max_retries + 1):
            try:
                message_id = await self.mailer.send(message)
                logger.info(f"Email sent: to={message['To']} subject={message['Subject']!r}")
                return message_id
            except (smtplib.SMTPException, OSError) as e:
                logger.warning(f"Email attempt {attempt}/{self.max_retries} failed: to={message['To']} error={e!r}")
                if attempt < self.max_retries:
                    await self._sleep(self.retry_delay * (2 ** (attempt - 1)))
                else:
                    raise NotificationError(f"All {self.max_retries} retry attempts failed: {e}")
