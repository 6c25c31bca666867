"""External identity provider client (Google OAuth 2.0 authorization code flow)."""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Mapping

from storefront.auth.errors import UpstreamIdentityError

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
SCOPES = (
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)


@dataclass(frozen=True)
class ExternalIdentity:
    provider: str
    subject: str
    email: str
    email_verified: bool
    name: str | None = None


class GoogleIdentityClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: Any = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    def authorization_url(self, state: str | None = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{AUTH_URL}?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, code: str) -> ExternalIdentity:
        if not isinstance(code, str) or not code.strip():
            raise UpstreamIdentityError("authorization code is required")
        form = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        token_response = await self._post_form(TOKEN_URL, form)
        token_payload = token_response.json()
        if token_response.status_code != 200:
            detail = token_payload.get("error_description") if isinstance(token_payload, Mapping) else None
            raise UpstreamIdentityError(detail or "failed to get access token")
        access_token = token_payload.get("access_token") if isinstance(token_payload, Mapping) else None
        if not access_token:
            raise UpstreamIdentityError("identity provider returned no access token")

        info_response = await self._get(USERINFO_URL, {"Authorization": f"Bearer {access_token}"})
        if info_response.status_code != 200:
            raise UpstreamIdentityError("failed to fetch user info from identity provider")
        return self._identity_from_userinfo(info_response.json())

    def _identity_from_userinfo(self, payload: Any) -> ExternalIdentity:
        if not isinstance(payload, Mapping):
            raise UpstreamIdentityError("identity provider returned malformed user info")
        subject = payload.get("id") or payload.get("sub")
        email = payload.get("email")
        if not subject or not email:
            raise UpstreamIdentityError("identity provider returned incomplete user info")
        verified = payload.get("verified_email", payload.get("email_verified", False))
        return ExternalIdentity(
            provider="google",
            subject=str(subject),
            email=str(email),
            email_verified=bool(verified),
            name=payload.get("name"),
        )

    async def _post_form(self, url: str, form: Mapping[str, str]):
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if self._http_client is not None:
            return await self._http_client.post(url, data=dict(form), headers=headers, timeout=self.timeout_seconds)
        body = urllib.parse.urlencode(form).encode("utf-8")
        return await asyncio.to_thread(self._request_with_urllib, url, headers, body)

    async def _get(self, url: str, headers: Mapping[str, str]):
        if self._http_client is not None:
            return await self._http_client.get(url, headers=dict(headers), timeout=self.timeout_seconds)
        return await asyncio.to_thread(self._request_with_urllib, url, headers, None)

    def _request_with_urllib(self, url: str, headers: Mapping[str, str], body: bytes | None):
        request = urllib.request.Request(url, data=body, headers=dict(headers))
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                status = response.getcode()
                content_bytes = response.read()
        except urllib.error.HTTPError as exc:
            status = exc.code
            content_bytes = exc.read()
        except urllib.error.URLError as exc:
            raise UpstreamIdentityError(f"identity provider unreachable: {exc.reason}") from exc

        try:
            content_json = json.loads(content_bytes.decode("utf-8"))
        except json.JSONDecodeError:
            content_json = {}

        return _SimpleResponse(status, content_json)


class _SimpleResponse:
    def __init__(self, status_code: int, payload: Mapping[str, Any]):
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Mapping[str, Any]:
        return self._payload
