"""Credential hashing and registration input policy."""

from __future__ import annotations

import re

from passlib.hash import argon2

from .errors import ValidationError

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,30}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
SPECIAL_CHARACTERS = set("@$!%*?&#^()-_=+[]{};:'\",.<>/\\|`~")
MIN_PASSWORD_LENGTH = 8
MAX_EMAIL_LENGTH = 255

# Verified against when no account matches, so unknown emails cost one hash check.
_DUMMY_HASH = argon2.hash("storefront-dummy-password")


def hash_secret(value: str) -> str:
    return argon2.hash(value)


def verify_secret(value: str, secret_hash: str | None) -> bool:
    if not secret_hash:
        return False
    try:
        return argon2.verify(value, secret_hash)
    except (ValueError, TypeError):
        return False


def burn_verification(value: str) -> None:
    argon2.verify(value, _DUMMY_HASH)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def password_problems(password: str | None) -> list[str]:
    if not password:
        return ["Password is required"]
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(ch.islower() for ch in password):
        problems.append("Password must contain a lowercase letter")
    if not any(ch.isupper() for ch in password):
        problems.append("Password must contain an uppercase letter")
    if not any(ch.isdigit() for ch in password):
        problems.append("Password must contain a number")
    if not any(ch in SPECIAL_CHARACTERS for ch in password):
        problems.append("Password must contain a special character")
    return problems


def validate_password(password: str | None, field: str = "password") -> None:
    problems = password_problems(password)
    if problems:
        raise ValidationError("Validation failed", [{"field": field, "message": p} for p in problems])


def validate_registration(username: str | None, name: str | None, email: str | None, password: str | None) -> None:
    errors: list[dict[str, str]] = []
    username = (username or "").strip()
    name = (name or "").strip()
    email = normalize_email(email)
    if not USERNAME_PATTERN.match(username):
        errors.append(
            {
                "field": "username",
                "message": "Username must be 3-30 characters of letters, numbers, and underscores",
            }
        )
    if not 2 <= len(name) <= 100:
        errors.append({"field": "name", "message": "Name must be 2-100 characters"})
    if len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
        errors.append({"field": "email", "message": "Invalid email format"})
    errors.extend({"field": "password", "message": p} for p in password_problems(password))
    if errors:
        raise ValidationError("Validation failed", errors)


def validate_email(email: str | None) -> str:
    normalized = normalize_email(email)
    if len(normalized) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(normalized):
        raise ValidationError("Validation failed", [{"field": "email", "message": "Invalid email format"}])
    return normalized
