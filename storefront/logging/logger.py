from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

logger = logging.getLogger("storefront.auth")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"storefront.{name}")


def log_auth_event(
    action: str,
    email: str,
    outcome: str,
    reason: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> None:
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "email": email,
        "outcome": outcome,
        "reason": reason,
        "metadata": dict(metadata) if metadata else {},
    }
    level = logging.INFO if outcome == "success" else logging.WARNING
    logger.log(level, json.dumps(entry, default=str))
