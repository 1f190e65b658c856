"""
core/notifier.py -- Outbound account email.

The core only ever calls the four Notifier methods with plain data. Rendering
and delivery live here; retries do not exist. Every call site dispatches
through core.background.TaskDispatcher, so a slow or failing SMTP server can
never fail a login or a password reset -- the dispatcher logs the failure.

Two implementations:
  LogNotifier  -- development default. Logs a redacted line per message.
  SmtpNotifier -- smtplib with STARTTLS (or SMTPS on port 465).

build_notifier(settings) picks SmtpNotifier when SMTP_HOST is set.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional, Protocol
from urllib.parse import quote

logger = logging.getLogger("vaultpass.notify")

_PRODUCT = "VaultPass"


class Notifier(Protocol):
    def send_verification(self, email: str, token: str, name: Optional[str] = None) -> None: ...

    def send_password_reset(self, email: str, token: str, name: Optional[str] = None) -> None: ...

    def send_password_changed(self, email: str, name: Optional[str] = None) -> None: ...

    def send_security_alert(self, email: str, title: str, body: str, ip: str, name: Optional[str] = None) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _greeting(name: Optional[str]) -> str:
    return f"Hello {name}," if name else "Hello,"


class LogNotifier:
    """Writes one log line per message instead of sending anything."""

    def send_verification(self, email: str, token: str, name: Optional[str] = None) -> None:
        logger.info("verification email for %s (not sent: SMTP not configured)", redact_email(email))

    def send_password_reset(self, email: str, token: str, name: Optional[str] = None) -> None:
        logger.info("password reset email for %s (not sent: SMTP not configured)", redact_email(email))

    def send_password_changed(self, email: str, name: Optional[str] = None) -> None:
        logger.info("password changed email for %s (not sent: SMTP not configured)", redact_email(email))

    def send_security_alert(self, email: str, title: str, body: str, ip: str, name: Optional[str] = None) -> None:
        logger.info("security alert '%s' for %s (not sent: SMTP not configured)", title, redact_email(email))


class SmtpNotifier:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str = "",
        base_url: str = "http://localhost:3000",
        timeout: float = 5.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email or user
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def send_verification(self, email: str, token: str, name: Optional[str] = None) -> None:
        link = f"{self.base_url}/verify-email?token={quote(token)}"
        body = (
            f"{_greeting(name)}\n\n"
            f"Please verify your {_PRODUCT} account by opening the link below:\n\n{link}\n\n"
            "This link expires in 24 hours. If you did not create an account, ignore this email."
        )
        self._send(email, f"Verify Your {_PRODUCT} Account", body)

    def send_password_reset(self, email: str, token: str, name: Optional[str] = None) -> None:
        link = f"{self.base_url}/reset-password?token={quote(token)}"
        body = (
            f"{_greeting(name)}\n\n"
            f"A password reset was requested for your {_PRODUCT} account:\n\n{link}\n\n"
            "This link expires in 1 hour. If you did not request it, you can ignore this email."
        )
        self._send(email, f"Reset Your {_PRODUCT} Password", body)

    def send_password_changed(self, email: str, name: Optional[str] = None) -> None:
        body = (
            f"{_greeting(name)}\n\n"
            f"The password for your {_PRODUCT} account was just changed. "
            "If you did not make this change, reset your password immediately."
        )
        self._send(email, f"Your {_PRODUCT} Password Has Been Changed", body)

    def send_security_alert(self, email: str, title: str, body: str, ip: str, name: Optional[str] = None) -> None:
        text = f"{_greeting(name)}\n\n{title}\n\n{body}\n\nIP address: {ip}"
        self._send(email, f"Security Alert: {title}", text)

    def _send(self, to_email: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{_PRODUCT} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(body)

        context = ssl.create_default_context()
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context) as server:
                self._deliver(server, msg)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls(context=context)
                self._deliver(server, msg)
        logger.info("Sent '%s' to %s", subject, redact_email(to_email))

    def _deliver(self, server: smtplib.SMTP, msg: EmailMessage) -> None:
        if self.user:
            server.login(self.user, self.password)
        server.send_message(msg)


def build_notifier(settings) -> Notifier:
    if not settings.smtp_host:
        return LogNotifier()
    return SmtpNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        from_email=settings.smtp_from,
        base_url=settings.app_base_url,
        timeout=settings.smtp_timeout_seconds,
    )
