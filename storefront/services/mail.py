"""Outbound mail collaborator.

``SmtpMailer`` talks to a real relay. ``LogMailer`` is the development side
channel used when no relay is configured and writes messages to the
``storefront.mail`` logger. In production without a relay,
``UnconfiguredMailer`` refuses every message so codes never reach a log. ``MailDelivery`` wraps either with bounded
retries and exponential backoff and reports the outcome instead of raising.
"""

from __future__ import annotations

import html
import logging
import smtplib
import time
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Callable, Protocol

from storefront.config import Settings

logger = logging.getLogger("storefront.mail")


@dataclass(frozen=True)
class MailMessage:
    recipient: str
    subject: str
    html: str


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    attempts: int
    error: str | None = None


class Mailer(Protocol):
    def send(self, message: MailMessage) -> None: ...


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        sender: str | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout_seconds = timeout_seconds

    def send(self, message: MailMessage) -> None:
        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = f"No-Reply <{self.sender}>"
        msg["To"] = message.recipient
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(message.html, subtype="html")
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout_seconds) as server:
                server.login(self.user, self.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
        logger.info("Sent mail to %s subject=%r", message.recipient, message.subject)


class LogMailer:
    def send(self, message: MailMessage) -> None:
        logger.warning(
            "Mail relay not configured; message for %s subject=%r body=%s",
            message.recipient,
            message.subject,
            message.html,
        )


class UnconfiguredMailer:
    def send(self, message: MailMessage) -> None:
        raise RuntimeError("mail relay is not configured")


class MailDelivery:
    def __init__(
        self,
        mailer: Mailer,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.mailer = mailer
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def deliver(self, message: MailMessage) -> DeliveryResult:
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.mailer.send(message)
                return DeliveryResult(delivered=True, attempts=attempt)
            except (smtplib.SMTPException, OSError, RuntimeError) as exc:
                last_error = exc
                logger.warning(
                    "Mail delivery attempt %s/%s to %s failed: %s",
                    attempt,
                    self.max_attempts,
                    message.recipient,
                    exc,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.delay_for(attempt))
        logger.error("Mail delivery to %s failed after %s attempts", message.recipient, self.max_attempts)
        return DeliveryResult(delivered=False, attempts=self.max_attempts, error=str(last_error))

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


def otp_message(recipient: str, name: str | None, code: str, ttl_minutes: int) -> MailMessage:
    body = (
        f"<p>Hi {html.escape(name or '')},</p>"
        f"<p>Your verification code is: <b>{code}</b></p>"
        f"<p>This code will expire in {ttl_minutes} minutes.</p>"
    )
    return MailMessage(recipient=recipient, subject="Your verification OTP", html=body)


def password_reset_message(recipient: str, name: str | None, reset_url: str) -> MailMessage:
    link = html.escape(reset_url, quote=True)
    body = (
        f"<p>Hi {html.escape(name or '')},</p>"
        "<p>You requested to reset your password. Use the link below to choose a new one:</p>"
        f'<p><a href="{link}">Reset Password</a></p>'
        "<p>This link will expire in 1 hour. If you didn't request this, ignore this email.</p>"
    )
    return MailMessage(recipient=recipient, subject="Password Reset Request", html=body)


def admin_reset_otp_message(recipient: str, name: str | None, code: str, ttl_minutes: int) -> MailMessage:
    body = (
        f"<p>Hello {html.escape(name or 'Admin')},</p>"
        "<p>You requested to reset your admin password. Use this code to continue:</p>"
        f"<p><b>{code}</b></p>"
        f"<p>This code will expire in {ttl_minutes} minutes. Never share it with anyone.</p>"
    )
    return MailMessage(recipient=recipient, subject="Admin Password Reset Code", html=body)


def password_changed_message(recipient: str, name: str | None) -> MailMessage:
    body = (
        f"<p>Hello {html.escape(name or '')},</p>"
        "<p>Your password has been changed. You can now log in with your new password.</p>"
        "<p>If you didn't make this change, contact support immediately.</p>"
    )
    return MailMessage(recipient=recipient, subject="Password Changed Successfully", html=body)


def build_mail_delivery(settings: Settings) -> MailDelivery:
    if settings.smtp_enabled:
        mailer: Mailer = SmtpMailer(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            sender=settings.smtp_from,
        )
    elif settings.is_production:
        logger.error("SMTP is not configured in production; outbound mail will fail")
        return MailDelivery(UnconfiguredMailer(), max_attempts=1)
    else:
        mailer = LogMailer()
    return MailDelivery(mailer, max_attempts=settings.mail_max_attempts, backoff_seconds=settings.mail_backoff_seconds)
