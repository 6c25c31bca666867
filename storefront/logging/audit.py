from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from storefront.models import AUTH_ACTIONS, AuthEventLog


class AuditLogger:
    def __init__(self, session: Session, logger: logging.Logger | None = None) -> None:
        self.session = session
        self.logger = logger or logging.getLogger("storefront.audit")

    def record_event(
        self,
        action: str,
        email: str,
        account_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: str | None = None,
    ) -> AuthEventLog:
        if action not in AUTH_ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")
        entry = AuthEventLog(
            action=action,
            email=email or "unknown",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent[:512] if user_agent else None,
            details=details,
        )
        self._persist(entry)
        return entry

    def events_for(self, email: str, limit: int = 50) -> list[AuthEventLog]:
        query = (
            self.session.query(AuthEventLog)
            .filter_by(email=email.strip().lower())
            .order_by(AuthEventLog.id.desc())
            .limit(limit)
        )
        return list(query.all())

    def _persist(self, entry: Any) -> None:
        self.session.add(entry)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(entry)
        self._log_entry(entry)

    def _log_entry(self, entry: Any) -> None:
        payload = {"category": "auth_event"}
        for column in entry.__table__.columns:
            payload[column.name] = getattr(entry, column.name)
        self.logger.info(json.dumps(payload, default=str))
