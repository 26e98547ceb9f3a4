"""
auth/notifier.py -- Outbound email capability used by the reset and verification flows.

AuthenticationService depends only on the Notifier protocol. Two implementations:

  SmtpNotifier -- stdlib smtplib, STARTTLS (port 587) or implicit TLS (465).
      Any SMTP/socket failure is raised as NotifierError (MAIL_SEND_FAILED).
  LogNotifier  -- used when MAIL_HOST is empty (local development). Logs a
      redacted recipient and a token preview instead of sending anything.

Tests substitute their own fake that records calls.

The service always commits its state change BEFORE calling the notifier, so a
mail failure never rolls back a password reset record or a new account.

Layer rule: no imports from api/. Import from core/ is allowed for Settings.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote

from auth.errors import NotifierError

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authcore.notifier")


class Notifier(Protocol):
    def send_password_reset(self, email: str, token: str, display_name: str | None = None) -> None: ...

    def send_email_verification(self, email: str, token: str, display_name: str | None = None) -> None: ...


def redact_email(email: str) -> str:
    """Redact an address for log lines: 'alice@example.com' -> 'al***@example.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _preview(token: str) -> str:
    return f"{token[:8]}..."


def _reset_link(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/reset-password?token={quote(token)}"


def _verify_link(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/verify-email?token={quote(token)}"


class SmtpNotifier:
    """Send transactional mail through an SMTP relay."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        from_address: str = "noreply@localhost",
        from_name: str = "authcore",
        base_url: str = "http://localhost:8000",
        reset_ttl_minutes: int = 60,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.from_name = from_name
        self.base_url = base_url
        self.reset_ttl_minutes = reset_ttl_minutes
        self.timeout = timeout

    def send_password_reset(self, email: str, token: str, display_name: str | None = None) -> None:
        link = _reset_link(self.base_url, token)
        text = (
            f"Hello {display_name or email},\n\n"
            "We received a request to reset your password. Open the link below to choose a new one.\n"
            f"The link expires in {self.reset_ttl_minutes} minutes.\n\n{link}\n\n"
            "If you did not request this, you can safely ignore this email.\n"
        )
        self._send(email, display_name, "Reset your password", text)

    def send_email_verification(self, email: str, token: str, display_name: str | None = None) -> None:
        link = _verify_link(self.base_url, token)
        text = (
            f"Hello {display_name or email},\n\n"
            f"Please confirm your email address by opening the link below.\n\n{link}\n"
        )
        self._send(email, display_name, "Verify your email address", text)

    def _send(self, to_email: str, display_name: str | None, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = f"{display_name} <{to_email}>" if display_name else to_email
        msg.set_content(body)

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Mail to %s failed: %s", redact_email(to_email), exc.__class__.__name__)
            raise NotifierError() from exc
        logger.info("Mail sent to %s (%s)", redact_email(to_email), subject)


class LogNotifier:
    """Development notifier: logs a redacted preview instead of sending. Never fails.

    Only the first characters of the token appear in the log line. Outside
    production the reset token is also returned by forgot-password.
    """

    def __init__(self, base_url: str = "http://localhost:8000") -> None:
        self.base_url = base_url

    def send_password_reset(self, email: str, token: str, display_name: str | None = None) -> None:
        logger.info(
            "Mail (dev mode) password reset for %s: %s",
            redact_email(email),
            _reset_link(self.base_url, _preview(token)),
        )

    def send_email_verification(self, email: str, token: str, display_name: str | None = None) -> None:
        logger.info(
            "Mail (dev mode) email verification for %s: %s",
            redact_email(email),
            _verify_link(self.base_url, _preview(token)),
        )


def build_notifier(settings: Settings) -> Notifier:
    """SmtpNotifier when MAIL_HOST is configured, LogNotifier otherwise."""
    if not settings.mail_host:
        logger.warning("MAIL_HOST not set -- emails will be logged, not sent")
        return LogNotifier(base_url=settings.app_url)
    return SmtpNotifier(
        host=settings.mail_host,
        port=settings.mail_port,
        username=settings.mail_username,
        password=settings.mail_password,
        use_tls=settings.mail_use_tls,
        from_address=settings.mail_from_address,
        from_name=settings.mail_from_name,
        base_url=settings.app_url,
        reset_ttl_minutes=max(1, settings.password_reset_ttl // 60),
        timeout=settings.mail_timeout,
    )
