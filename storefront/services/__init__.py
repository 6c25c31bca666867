from .fast_store import build_rate_limit_guard, connect_fast_store
from .identity import ExternalIdentity, GoogleIdentityClient
from .mail import (
    DeliveryResult,
    LogMailer,
    MailDelivery,
    MailMessage,
    SmtpMailer,
    UnconfiguredMailer,
    build_mail_delivery,
    otp_message,
    password_reset_message,
)

__all__ = [
    "DeliveryResult",
    "ExternalIdentity",
    "GoogleIdentityClient",
    "LogMailer",
    "MailDelivery",
    "MailMessage",
    "SmtpMailer",
    "UnconfiguredMailer",
    "build_mail_delivery",
    "build_rate_limit_guard",
    "connect_fast_store",
    "otp_message",
    "password_reset_message",
]
