"""
SMTP mail transport for alert emails.

Sends one HTML message per call with aiosmtplib. Port 465 uses implicit
TLS, any other port upgrades with STARTTLS. SMTP and network failures are
raised as TransientIOError; the caller decides whether to log and move on.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import TYPE_CHECKING

import aiosmtplib

from monitor.src.errors import ConfigurationError, TransientIOError

if TYPE_CHECKING:
    from monitor.src.config import MonitorSettings

logger = logging.getLogger(__name__)

SENDER_NAME = "Solar AI Monitor"


def mask_email(address: str | None) -> str:
    """Hide most of the local part of an address for log output."""
    if not address:
        return "N/A"
    local, sep, domain = address.partition("@")
    if not sep:
        return address
    visible = local[-2:] if len(local) > 2 else local
    return f"{'*' * max(2, len(local) - 2)}{visible}@{domain}"


class SmtpMailer:
    """Authenticated SMTP sender.

    Args:
        host: SMTP server hostname.
        port: SMTP port; 465 selects implicit TLS.
        username: Login, also used as the From address.
        password: Login password.
        timeout_s: Timeout for the whole SMTP exchange.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        timeout_s: float = 30.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._timeout_s = timeout_s

    @classmethod
    def from_settings(cls, settings: MonitorSettings) -> SmtpMailer:
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            timeout_s=settings.http_timeout_s,
        )

    @property
    def sender(self) -> str:
        return self._username

    def ensure_configured(self) -> None:
        """Raise ConfigurationError when credentials are missing."""
        if not self._username or not self._password:
            raise ConfigurationError("SMTP_USER / SMTP_PASSWORD not configured")

    async def send(self, *, recipient: str, subject: str, html: str) -> str:
        """Send one HTML email and return its Message-ID.

        Raises:
            ConfigurationError: Credentials are missing.
            TransientIOError: The SMTP exchange failed.
        """
        self.ensure_configured()

        message = EmailMessage()
        message["From"] = formataddr((SENDER_NAME, self._username))
        message["To"] = recipient
        message["Subject"] = subject
        message_id = make_msgid(domain=self._username.partition("@")[2] or None)
        message["Message-ID"] = message_id
        message.set_content("This alert requires an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")

        try:
            await aiosmtplib.send(
                message,
                hostname=self._host,
                port=self._port,
                username=self._username,
                password=self._password,
                use_tls=self._port == 465,
                start_tls=self._port != 465,
                timeout=self._timeout_s,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise TransientIOError(f"SMTP send failed: {exc}") from exc

        logger.info("Email sent to %s: %s", mask_email(recipient), subject)
        return message_id
