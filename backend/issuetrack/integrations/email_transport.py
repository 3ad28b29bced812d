from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage as MimeMessage
from typing import Any, Dict, Optional, Protocol

from ..config import Settings


@dataclass
class EmailMessage:
    to: str
    subject: str
    text: str
    html: Optional[str] = None


class EmailTransport(Protocol):
    async def send(self, message: EmailMessage) -> Dict[str, Any]:
        """Deliver the message and return the provider response, or raise."""
        ...


class SmtpEmailTransport:
    """Sends mail through an SMTP relay; STARTTLS unless the port is 465."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_address: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_address = from_address or user
        self.timeout = timeout

    def build_message(self, message: EmailMessage) -> MimeMessage:
        mime = MimeMessage()
        mime["Subject"] = message.subject
        mime["From"] = self.from_address or ""
        mime["To"] = message.to
        mime.set_content(message.text)
        if message.html:
            mime.add_alternative(message.html, subtype="html")
        return mime

    def _send_sync(self, message: EmailMessage) -> Dict[str, Any]:
        mime = self.build_message(message)
        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            if self.port != 465:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            refused = server.send_message(mime)
        finally:
            server.quit()

        if refused:
            raise smtplib.SMTPRecipientsRefused(refused)
        return {
            "accepted": [message.to],
            "messageId": mime.get("Message-ID"),
            "host": self.host,
        }

    async def send(self, message: EmailMessage) -> Dict[str, Any]:
        # smtplib is blocking
        return await asyncio.to_thread(self._send_sync, message)


def build_email_transport(settings: Settings) -> Optional[SmtpEmailTransport]:
    """Return an SMTP transport, or None when SMTP is not configured."""
    if not (settings.smtp_host and settings.smtp_user):
        return None
    return SmtpEmailTransport(
        settings.smtp_host,
        settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        from_address=settings.smtp_from_address,
    )
