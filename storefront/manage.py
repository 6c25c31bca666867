"""Operator commands: ``create-admin`` and ``purge-unverified``."""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from storefront.auth import ValidationError
from storefront.auth.passwords import hash_secret, normalize_email, validate_registration
from storefront.config import load_settings
from storefront.logging import get_logger
from storefront.main import build_engine
from storefront.models import Account, Base

logger = get_logger("manage")


def create_admin(session: Session, username: str, name: str, email: str, password: str) -> Account:
    validate_registration(username, name, email, password)
    normalized_email = normalize_email(email)
    account = session.query(Account).filter_by(email=normalized_email).first()
    if account is None:
        account = Account(
            username=username.strip(),
            name=name.strip(),
            email=normalized_email,
            otp_attempts=0,
        )
        session.add(account)
    account.password_hash = hash_secret(password)
    account.role = "admin"
    account.is_verified = True
    account.otp_hash = None
    account.otp_expires_at = None
    account.otp_attempts = 0
    account.otp_locked_until = None
    session.commit()
    logger.info("Admin account ready email=%s id=%s", account.email, account.id)
    return account


def purge_unverified(session: Session, older_than_days: int, now: datetime | None = None) -> int:
    if older_than_days < 1:
        raise ValueError("older_than_days must be at least 1")
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=older_than_days)
    stmt = (
        delete(Account)
        .where(Account.is_verified.is_(False), Account.created_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    removed = session.execute(stmt).rowcount or 0
    session.commit()
    logger.info("Purged %s unverified accounts created before %s", removed, cutoff.isoformat())
    return removed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storefront-manage", description="Storefront auth operator commands")
    sub = parser.add_subparsers(dest="command", required=True)

    admin = sub.add_parser("create-admin", help="Create or promote a verified admin account")
    admin.add_argument("--username", required=True)
    admin.add_argument("--name", required=True)
    admin.add_argument("--email", required=True)
    admin.add_argument("--password", help="Prompted for when omitted")

    purge = sub.add_parser("purge-unverified", help="Delete unverified accounts older than N days")
    purge.add_argument("--older-than-days", type=int, default=7)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = build_parser().parse_args(argv)
    settings = load_settings()
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, expire_on_commit=False, future=True)()
    try:
        if args.command == "create-admin":
            password = args.password or getpass.getpass("Admin password: ")
            try:
                create_admin(session, args.username, args.name, args.email, password)
            except ValidationError as exc:
                for item in exc.errors or [{"field": "-", "message": exc.msg}]:
                    logger.error("%s: %s", item["field"], item["message"])
                return 1
        elif args.command == "purge-unverified":
            purge_unverified(session, args.older_than_days)
    finally:
        session.close()
        engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
