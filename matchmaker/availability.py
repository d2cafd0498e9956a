"""Recurring weekly availability windows and the overlap search between two users."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from matchmaker.models import AvailabilityWindow
from matchmaker.utils import as_utc, utcnow

log = logging.getLogger(__name__)

DEFAULT_SLOT_MINUTES = 30

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def parse_hhmm(value: str) -> int:
    """Convert ``"HH:MM"`` (or ``"HH:MM:SS"``) to minutes since midnight."""
    m = _HHMM_RE.match((value or "").strip())
    if not m:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    hours, minutes = int(m.group(1)), int(m.group(2))
    if hours > 24 or minutes > 59 or (hours == 24 and minutes):
        raise ValueError(f"Invalid time {value!r}")
    return hours * 60 + minutes


def format_hhmm(minute_of_day: int) -> str:
    return f"{minute_of_day // 60:02d}:{minute_of_day % 60:02d}"


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown timezone %r, using UTC", name)
        return ZoneInfo("UTC")


@dataclass(frozen=True)
class Window:
    day_of_week: int  # 0 = Sunday
    start_minute: int
    end_minute: int
    timezone: str = "UTC"

    @classmethod
    def from_row(cls, row: AvailabilityWindow) -> Window:
        return cls(
            day_of_week=row.day_of_week,
            start_minute=parse_hhmm(row.start_time),
            end_minute=parse_hhmm(row.end_time),
            timezone=row.timezone or "UTC",
        )


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def sunday_based_weekday(moment: datetime) -> int:
    """``datetime.weekday()`` counts from Monday; windows count from Sunday."""
    return (moment.weekday() + 1) % 7


def next_occurrence(day_of_week: int, minute_of_day: int, tz: str, now: datetime | None = None) -> datetime:
    """Next wall-clock occurrence of *day_of_week* at *minute_of_day* in *tz*, as UTC.

    Today counts only while its occurrence has not started yet.
    """
    zone = _zone(tz)
    local_now = (as_utc(now) or utcnow()).astimezone(zone)
    days_ahead = (day_of_week - sunday_based_weekday(local_now)) % 7
    day = local_now.date() + timedelta(days=days_ahead)
    candidate = datetime.combine(day, time(minute_of_day // 60, minute_of_day % 60), tzinfo=zone)
    if candidate < local_now:
        candidate = datetime.combine(
            day + timedelta(days=7), time(minute_of_day // 60, minute_of_day % 60), tzinfo=zone,
        )
    return as_utc(candidate)


def find_overlap(
    windows_a: Iterable[Window],
    windows_b: Iterable[Window],
    now: datetime | None = None,
    slot_minutes: int = DEFAULT_SLOT_MINUTES,
) -> Slot | None:
    """Return the first slot where both users are available, or ``None``.

    A's windows are scanned in order against B's windows on the same weekday;
    the first intersection long enough to hold a whole slot wins and is
    projected onto its next occurrence in A's timezone. Shorter intersections
    are passed over.
    Window times are compared as plain minutes of the day.
    """
    windows_b = list(windows_b)
    for wa in windows_a:
        for wb in windows_b:
            if wa.day_of_week != wb.day_of_week:
                continue
            start = max(wa.start_minute, wb.start_minute)
            end = min(wa.end_minute, wb.end_minute)
            if end - start < slot_minutes:
                continue
            slot_start = next_occurrence(wa.day_of_week, start, wa.timezone, now)
            return Slot(slot_start, slot_start + timedelta(minutes=slot_minutes))
    return None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def windows_for(session: Session, user_id: int) -> list[Window]:
    rows = session.execute(
        select(AvailabilityWindow)
        .where(AvailabilityWindow.user_id == user_id)
        .order_by(AvailabilityWindow.id)
    ).scalars().all()
    windows = []
    for row in rows:
        try:
            windows.append(Window.from_row(row))
        except ValueError as exc:
            log.warning("Skipping malformed availability window %s for user %s: %s", row.id, user_id, exc)
    return windows


def window_to_dict(row: AvailabilityWindow) -> dict[str, Any]:
    return {
        "day_of_week": row.day_of_week,
        "start_time": row.start_time,
        "end_time": row.end_time,
        "timezone": row.timezone,
    }


def set_windows(session: Session, user_id: int, windows: Iterable[Mapping[str, Any]]) -> list[AvailabilityWindow]:
    """Replace every availability window of *user_id*.

    Each entry needs ``day_of_week`` (0 = Sunday), ``start_time`` and
    ``end_time`` (``HH:MM``); ``timezone`` defaults to UTC. Raises
    ``ValueError`` on invalid input without touching the stored windows.
    """
    rows: list[AvailabilityWindow] = []
    seen_days: set[int] = set()
    for entry in windows:
        day = entry.get("day_of_week")
        if not isinstance(day, int) or isinstance(day, bool) or not 0 <= day <= 6:
            raise ValueError(f"day_of_week must be an integer 0-6, got {day!r}")
        if day in seen_days:
            raise ValueError(f"Duplicate availability window for day {day}")
        seen_days.add(day)

        start = parse_hhmm(str(entry.get("start_time", "")))
        end = parse_hhmm(str(entry.get("end_time", "")))
        if start >= end:
            raise ValueError(f"start_time must be before end_time on day {day}")

        tz = entry.get("timezone") or "UTC"
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone {tz!r}") from None

        rows.append(AvailabilityWindow(
            user_id=user_id, day_of_week=day,
            start_time=format_hhmm(start), end_time=format_hhmm(end), timezone=tz,
        ))

    session.execute(delete(AvailabilityWindow).where(AvailabilityWindow.user_id == user_id))
    session.add_all(rows)
    session.commit()
    log.info("Stored %d availability windows for user %s", len(rows), user_id)
    return rows
