from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import validates

from .db import Base

ROLES = ("customer", "admin")


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("email", name="uq_accounts_email"),
        UniqueConstraint("username", name="uq_accounts_username"),
        UniqueConstraint("external_provider", "external_subject", name="uq_accounts_external_identity"),
    )

    id = Column(Integer, primary_key=True)
    username = Column(String(30), nullable=False)
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(String(16), nullable=False, default="customer")
    is_verified = Column(Boolean, nullable=False, default=False)
    otp_hash = Column(String)
    otp_expires_at = Column(DateTime(timezone=True))
    otp_attempts = Column(Integer, nullable=False, default=0)
    otp_locked_until = Column(DateTime(timezone=True))
    reset_token_hash = Column(String)
    reset_token_expires_at = Column(DateTime(timezone=True))
    external_provider = Column(String(32))
    external_subject = Column(String(255))
    last_login = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @validates("role")
    def _check_role(self, key, value):
        if value not in ROLES:
            raise ValueError(f"unknown role {value!r}")
        return value

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "isVerified": bool(self.is_verified),
        }
