"""SMTP e-mail sender. smtplib is blocking, so sends run in a worker thread."""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from educrm.core.config import Settings

logger = logging.getLogger(__name__)

SMTP_SSL_PORT = 465


class EmailSender:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def configured(self) -> bool:
        return bool(self._settings.smtp_host)

    def _build_message(self, to_email: str, subject: str, html: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = self._settings.email_from
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(html, "html"))
        return msg

    def _send_sync(self, msg: MIMEMultipart) -> None:
        s = self._settings
        if s.smtp_port == SMTP_SSL_PORT:
            server = smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=15)
        else:
            server = smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=15)
            server.starttls()
        try:
            if s.smtp_user and s.smtp_password:
                server.login(s.smtp_user, s.smtp_password)
            server.send_message(msg)
        finally:
            server.quit()

    async def send(self, to_email: Optional[str], subject: str, html: str) -> bool:
        if not self.configured:
            logger.warning("SMTP not configured, skipping email '%s'", subject)
            return False
        if not to_email:
            logger.warning("No recipient address, skipping email '%s'", subject)
            return False
        msg = self._build_message(to_email, subject, html)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", to_email, e)
            return False
        logger.info("Email sent to %s: %s", to_email, subject)
        return True
