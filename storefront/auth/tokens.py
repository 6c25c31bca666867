from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt

from storefront.models import Account

from .errors import InvalidTokenError

ALGORITHM = "HS256"


class TokenIssuer:
    def __init__(self, jwt_secret: str, ttl_seconds: int = 7 * 24 * 3600, admin_ttl_seconds: int = 8 * 3600) -> None:
        self.jwt_secret = jwt_secret
        self.ttl_seconds = ttl_seconds
        self.admin_ttl_seconds = admin_ttl_seconds

    def issue(self, account: Account, now: datetime | None = None, admin_session: bool = False) -> str:
        moment = now or datetime.now(timezone.utc)
        ttl = self.admin_ttl_seconds if admin_session else self.ttl_seconds
        payload = {
            "sub": str(account.id),
            "role": account.role,
            "iat": moment,
            "exp": moment + timedelta(seconds=ttl),
        }
        if admin_session:
            payload["adm"] = True
        return jwt.encode(payload, self.jwt_secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> dict:
        if not token:
            raise InvalidTokenError("no token, authorization denied")
        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[ALGORITHM],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError() from exc
        return payload


def bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise InvalidTokenError("no token, authorization denied")
    return authorization.split(" ", 1)[1].strip()
