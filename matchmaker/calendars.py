"""Google Calendar v3 adapter: free/busy reads, conflict checks and event inserts.

Reads fail open: an unreachable or misbehaving calendar API yields "no busy
time". Writes fail closed and raise
:class:`~matchmaker.errors.CalendarError`.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from matchmaker.config import Settings
from matchmaker.credentials import CredentialStore, Credentials
from matchmaker.db import SessionFactory, session_scope
from matchmaker.errors import CalendarError
from matchmaker.models import CANCELLED, Meeting
from matchmaker.utils import as_utc, parse_iso

log = logging.getLogger(__name__)

CALENDAR_API = "https://www.googleapis.com/calendar/v3"

_VIDEO_ENTRY_TYPES = ("video", "hangoutsMeet", "hangout")


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


@dataclass(frozen=True)
class CalendarEvent:
    summary: str
    start: datetime
    end: datetime
    description: str = ""
    attendees: tuple[str, ...] = ()
    create_conference: bool = True


@dataclass(frozen=True)
class CreatedEvent:
    id: str | None = None
    html_link: str | None = None
    conference_link: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def _conference_link(event: dict[str, Any]) -> str | None:
    entry_points = (event.get("conferenceData") or {}).get("entryPoints") or []
    for ep in entry_points:
        if ep.get("entryPointType") in _VIDEO_ENTRY_TYPES and ep.get("uri"):
            return ep["uri"]
    return event.get("hangoutLink")


def _event_body(event: CalendarEvent) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": event.summary,
        "description": event.description,
        "start": {"dateTime": as_utc(event.start).isoformat()},
        "end": {"dateTime": as_utc(event.end).isoformat()},
        "attendees": [{"email": email} for email in event.attendees if email],
    }
    if event.create_conference:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": secrets.token_hex(8),
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            },
        }
    return body


class CalendarAdapter:
    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Settings,
        credential_store: CredentialStore,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._session_factory = session_factory
        self.settings = settings
        self.credential_store = credential_store
        self._transport = transport

    def _client(self, credentials: Credentials) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=CALENDAR_API,
            timeout=httpx.Timeout(self.settings.calendar_request_timeout_seconds),
            headers={"Authorization": f"Bearer {credentials.access_token}"},
            transport=self._transport,
        )

    async def get_busy_times(
        self, user_id: int, credentials: Credentials, start: datetime, end: datetime,
    ) -> list[BusyInterval]:
        """Busy intervals on the user's configured calendar; ``[]`` on any failure."""
        calendar_id = self.credential_store.get_calendar_id(user_id)
        body = {
            "timeMin": as_utc(start).isoformat(),
            "timeMax": as_utc(end).isoformat(),
            "items": [{"id": calendar_id}],
        }
        try:
            async with asyncio.timeout(self.settings.calendar_request_timeout_seconds):
                async with self._client(credentials) as client:
                    resp = await client.post("/freeBusy", json=body)
            if resp.status_code >= 400:
                log.warning("freeBusy for user %s returned %s, assuming free", user_id, resp.status_code)
                return []
            data = resp.json()
        except (httpx.HTTPError, TimeoutError, ValueError) as exc:
            log.warning("freeBusy for user %s failed, assuming free: %r", user_id, exc)
            return []

        busy = ((data.get("calendars") or {}).get(calendar_id) or {}).get("busy") or []
        intervals = []
        for item in busy:
            b_start, b_end = parse_iso(item.get("start")), parse_iso(item.get("end"))
            if b_start and b_end:
                intervals.append(BusyInterval(b_start, b_end))
        return intervals

    def has_meeting_conflict(self, user_id: int, start: datetime, end: datetime) -> bool:
        """True if a non-cancelled Meeting of *user_id* overlaps [start, end).

        A failed query is treated as no conflict.
        """
        start, end = as_utc(start), as_utc(end)
        try:
            with session_scope(self._session_factory) as session:
                meetings = session.execute(
                    select(Meeting).where(
                        or_(Meeting.participant_a_id == user_id, Meeting.participant_b_id == user_id),
                        Meeting.status != CANCELLED,
                    )
                ).scalars().all()
                return any(
                    as_utc(m.start_time) < end and start < as_utc(m.end_time) for m in meetings
                )
        except SQLAlchemyError as exc:
            log.warning("Meeting conflict check failed for user %s, assuming free: %s", user_id, exc)
            return False

    async def is_time_available(
        self, user_id: int, credentials: Credentials | None, start: datetime, end: datetime,
    ) -> bool:
        if credentials is not None:
            busy = await self.get_busy_times(user_id, credentials, start, end)
            if any(b.overlaps(as_utc(start), as_utc(end)) for b in busy):
                return False
        return not self.has_meeting_conflict(user_id, start, end)

    async def create_event(self, user_id: int, credentials: Credentials, event: CalendarEvent) -> CreatedEvent:
        calendar_id = self.credential_store.get_calendar_id(user_id)
        params = {"conferenceDataVersion": "1", "sendUpdates": "all"}
        try:
            async with asyncio.timeout(self.settings.calendar_request_timeout_seconds):
                async with self._client(credentials) as client:
                    resp = await client.post(
                        f"/calendars/{quote(calendar_id, safe='@')}/events", params=params, json=_event_body(event),
                    )
        except (httpx.HTTPError, TimeoutError) as exc:
            raise CalendarError(f"Failed to create calendar event for user {user_id}: {exc!r}") from exc
        if resp.status_code >= 400:
            raise CalendarError(
                f"Calendar API returned {resp.status_code} for user {user_id}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise CalendarError("Calendar API returned invalid JSON") from exc
        return CreatedEvent(
            id=data.get("id"),
            html_link=data.get("htmlLink"),
            conference_link=_conference_link(data),
            raw=data,
        )
