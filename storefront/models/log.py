from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, event, func

from .db import Base

AUTH_ACTIONS = (
    "REGISTER_SUCCESS",
    "REGISTER_FAILED",
    "OTP_SENT",
    "OTP_DELIVERY_FAILED",
    "OTP_VERIFY_SUCCESS",
    "OTP_VERIFY_FAILED",
    "OTP_RESEND",
    "ACCOUNT_LOCKED",
    "LOGIN_SUCCESS",
    "LOGIN_FAILED",
    "ADMIN_LOGIN_SUCCESS",
    "ADMIN_LOGIN_FAILED",
    "EXTERNAL_LOGIN_SUCCESS",
    "PASSWORD_RESET_REQUESTED",
    "PASSWORD_RESET_SUCCESS",
    "PASSWORD_RESET_FAILED",
    "PASSWORD_CHANGED",
    "PROFILE_UPDATED",
    "ADMIN_PASSWORD_RESET_REQUESTED",
    "ADMIN_PASSWORD_RESET_SUCCESS",
    "ADMIN_PASSWORD_RESET_FAILED",
    "ADMIN_RESET_OTP_SENT",
    "ADMIN_RESET_OTP_FAILED",
)


class ImmutableLogMixin:
    @classmethod
    def __declare_last__(cls) -> None:
        event.listen(cls, "before_update", cls._deny_mutation)
        event.listen(cls, "before_delete", cls._deny_mutation)

    @staticmethod
    def _deny_mutation(mapper, connection, target) -> None:
        raise ValueError("Log entries are immutable")


class AuthEventLog(ImmutableLogMixin, Base):
    __tablename__ = "auth_event_logs"

    id = Column(Integer, primary_key=True)
    action = Column(String(32), nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    account_id = Column(Integer, index=True)
    ip_address = Column(String(64))
    user_agent = Column(String(512))
    details = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
