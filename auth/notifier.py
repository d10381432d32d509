"""
auth/notifier.py -- Delivery of verification and password-reset links.

The gateway only needs "deliver this token to this address". EmailNotifier
does that over SMTP (STARTTLS or implicit TLS). When SMTP_HOST is not set it
runs in dev mode and logs the link instead, so local registration and reset
flows work without a mail server.

Delivery failures are logged and reported as False, never raised. The
gateway must answer forgot-password identically whether or not mail went out,
so a transport error cannot be allowed to change the response.

Email addresses are redacted in logs. In dev mode the link (which embeds the
raw token) is logged at INFO -- that is the point of dev mode. With SMTP
configured, tokens never reach the log.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol
from urllib.parse import urlencode

from core.config import Settings

logger = logging.getLogger("sessionkeep.notifier")


class Notifier(Protocol):
    def send_verification(self, email: str, token: str) -> bool: ...

    def send_password_reset(self, email: str, token: str) -> bool: ...


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailNotifier:
    """SMTP notifier with a logging fallback when SMTP is not configured."""

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        from_name: str = "SessionKeep",
        base_url: str = "http://localhost:5173",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> EmailNotifier:
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from,
            from_name=settings.mail_from_name,
            base_url=settings.public_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def send_verification(self, email: str, token: str) -> bool:
        link = f"{self.base_url}/verify-email?{urlencode({'token': token})}"
        body = (
            "Welcome!\n\n"
            "Confirm your email address by opening the link below:\n\n"
            f"{link}\n\n"
            "If you did not create an account, you can ignore this message.\n"
        )
        return self._send(email, "Confirm your email address", body)

    def send_password_reset(self, email: str, token: str) -> bool:
        link = f"{self.base_url}/reset-password?{urlencode({'token': token})}"
        body = (
            "We received a request to reset your password.\n\n"
            "Open the link below to choose a new one. It expires in one hour:\n\n"
            f"{link}\n\n"
            "If you did not ask for this, no action is needed.\n"
        )
        return self._send(email, "Reset your password", body)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, to_email: str, subject: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("Mail (dev mode) to %s: %s\n%s", _redact_email(to_email), subject, body)
            return True

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(body)

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("Mail delivery to %s failed (%s)", _redact_email(to_email), subject)
            return False

        logger.info("Mail sent to %s: %s", _redact_email(to_email), subject)
        return True
