"""Google OAuth2 client and the per-user credential store.

The store hands out a usable access token for a user: expired tokens are
refreshed once on read and persisted. A failed refresh falls back to the
stale token; calendar reads made with it fail open.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from urllib.parse import urlencode

import httpx
from sqlalchemy import delete, select

from matchmaker.config import Settings
from matchmaker.db import SessionFactory, session_scope
from matchmaker.errors import OAuthError, OAuthNotConfiguredError
from matchmaker.models import CalendarSettings, OAuthCredential
from matchmaker.utils import as_utc, utcnow

log = logging.getLogger(__name__)

PROVIDER = "google"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
)

CALENDAR_SETTING_FIELDS = (
    "calendar_id", "calendar_email", "timezone", "auto_accept_meetings", "sync_external_calendar",
)


@dataclass(frozen=True)
class Credentials:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str = ""

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) < (now or utcnow())

    @classmethod
    def from_row(cls, row: OAuthCredential) -> Credentials:
        return cls(
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=as_utc(row.expires_at),
            scope=row.scope or "",
        )


# ---------------------------------------------------------------------------
# OAuth client
# ---------------------------------------------------------------------------


class GoogleOAuthClient:
    """Authorization-code flow against Google's OAuth2 endpoints."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self.settings.oauth_configured

    def _require_config(self) -> None:
        if not self.configured:
            raise OAuthNotConfiguredError("Google OAuth client id, secret and redirect URI must be set")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.calendar_request_timeout_seconds),
            transport=self._transport,
        )

    # -- state parameter ----------------------------------------------------

    def _sign(self, payload: str) -> str:
        key = self.settings.oauth_state_secret.encode()
        return hmac.new(key, payload.encode(), hashlib.sha256).hexdigest()

    def encode_state(self, user_id: int, now: float | None = None) -> str:
        """Signed, timestamped ``state`` value binding the callback to *user_id*."""
        payload = f"{user_id}:{int(now if now is not None else time.time())}"
        encoded = base64.urlsafe_b64encode(payload.encode()).decode().rstrip("=")
        return f"{encoded}.{self._sign(payload)}"

    def decode_state(self, state: str, now: float | None = None) -> int:
        """Return the user id carried by *state*; raises OAuthError if forged or stale."""
        try:
            encoded, signature = state.rsplit(".", 1)
            payload = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)).decode()
            user_part, ts_part = payload.split(":", 1)
            user_id, issued_at = int(user_part), int(ts_part)
        except (ValueError, UnicodeDecodeError):
            raise OAuthError("Invalid state parameter") from None
        if not hmac.compare_digest(signature, self._sign(payload)):
            raise OAuthError("Invalid state signature")
        age = (now if now is not None else time.time()) - issued_at
        if age > self.settings.oauth_state_max_age_seconds:
            raise OAuthError("State parameter has expired")
        return user_id

    # -- endpoints ------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        self._require_config()
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",  # forces a refresh token on every grant
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        self._require_config()
        form = {
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            **data,
        }
        try:
            async with asyncio.timeout(self.settings.calendar_request_timeout_seconds):
                async with self._client() as client:
                    resp = await client.post(GOOGLE_TOKEN_URL, data=form)
        except (httpx.HTTPError, TimeoutError) as exc:
            raise OAuthError(f"Token endpoint unreachable: {exc!r}") from exc
        if resp.status_code >= 400:
            raise OAuthError(f"Token endpoint returned {resp.status_code}: {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise OAuthError("Token endpoint returned invalid JSON") from exc
        if not body.get("access_token"):
            raise OAuthError("Token response has no access_token")
        return body

    @staticmethod
    def _to_credentials(body: dict[str, Any], fallback_refresh: str | None = None) -> Credentials:
        expires_in = body.get("expires_in")
        expires_at = utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        return Credentials(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or fallback_refresh,
            expires_at=expires_at,
            scope=body.get("scope") or "",
        )

    async def exchange_code(self, code: str) -> Credentials:
        body = await self._post_token({
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.settings.google_redirect_uri,
        })
        return self._to_credentials(body)

    async def refresh(self, refresh_token: str) -> Credentials:
        body = await self._post_token({"refresh_token": refresh_token, "grant_type": "refresh_token"})
        return self._to_credentials(body, fallback_refresh=refresh_token)

    async def fetch_email(self, credentials: Credentials) -> str | None:
        """Email of the Google account behind *credentials*, or ``None``."""
        headers = {"Authorization": f"Bearer {credentials.access_token}"}
        try:
            async with asyncio.timeout(self.settings.calendar_request_timeout_seconds):
                async with self._client() as client:
                    resp = await client.get(GOOGLE_USERINFO_URL, headers=headers)
            if resp.status_code >= 400:
                log.warning("Userinfo lookup returned %s", resp.status_code)
                return None
            return resp.json().get("email")
        except (httpx.HTTPError, TimeoutError, ValueError) as exc:
            log.warning("Userinfo lookup failed: %s", exc)
            return None


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class CredentialStore:
    """Per-user OAuth tokens and calendar settings backed by the SQL database."""

    def __init__(
        self,
        session_factory: SessionFactory,
        oauth_client: GoogleOAuthClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.oauth_client = oauth_client
        self._clock = clock

    def _load(self, user_id: int) -> Credentials | None:
        with session_scope(self._session_factory) as session:
            row = session.execute(
                select(OAuthCredential).where(
                    OAuthCredential.user_id == user_id, OAuthCredential.provider == PROVIDER,
                )
            ).scalar_one_or_none()
            return Credentials.from_row(row) if row else None

    def has_credentials(self, user_id: int) -> bool:
        return self._load(user_id) is not None

    async def get_credentials(self, user_id: int) -> Credentials | None:
        creds = self._load(user_id)
        if creds is None or not creds.is_expired(self._clock()):
            return creds
        if not creds.refresh_token or self.oauth_client is None:
            return creds
        try:
            refreshed = await self.oauth_client.refresh(creds.refresh_token)
        except OAuthError as exc:
            log.warning("Token refresh failed for user %s, using stale token: %s", user_id, exc)
            return creds
        self.store_credentials(user_id, refreshed)
        log.info("Refreshed Google access token for user %s", user_id)
        return refreshed

    def store_credentials(self, user_id: int, credentials: Credentials) -> None:
        with session_scope(self._session_factory) as session:
            row = session.execute(
                select(OAuthCredential).where(
                    OAuthCredential.user_id == user_id, OAuthCredential.provider == PROVIDER,
                )
            ).scalar_one_or_none()
            if row is None:
                row = OAuthCredential(user_id=user_id, provider=PROVIDER)
                session.add(row)
            row.access_token = credentials.access_token
            row.refresh_token = credentials.refresh_token
            row.expires_at = credentials.expires_at
            row.scope = credentials.scope
            row.updated_at = self._clock()
            session.commit()

    def delete_credentials(self, user_id: int) -> bool:
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(OAuthCredential).where(
                    OAuthCredential.user_id == user_id, OAuthCredential.provider == PROVIDER,
                )
            )
            session.commit()
            return bool(result.rowcount)

    def get_calendar_settings(self, user_id: int) -> CalendarSettings | None:
        with session_scope(self._session_factory) as session:
            return session.get(CalendarSettings, user_id)

    def get_calendar_id(self, user_id: int) -> str:
        settings = self.get_calendar_settings(user_id)
        return (settings.calendar_id if settings else None) or "primary"

    def save_calendar_settings(self, user_id: int, **fields: Any) -> CalendarSettings:
        """Upsert calendar settings; ``None`` values leave the stored field unchanged."""
        unknown = set(fields) - set(CALENDAR_SETTING_FIELDS)
        if unknown:
            raise ValueError(f"Unknown calendar settings: {', '.join(sorted(unknown))}")
        with session_scope(self._session_factory) as session:
            row = session.get(CalendarSettings, user_id)
            if row is None:
                row = CalendarSettings(user_id=user_id, calendar_id="primary")
                session.add(row)
            for key, value in fields.items():
                if value is not None:
                    setattr(row, key, value)
            row.updated_at = self._clock()
            session.commit()
            return row
