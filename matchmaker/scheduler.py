"""Automatic meeting arrangement between opted-in investors and companies.

Per pair::

    DISCOVER -> (existing request: skipped) -> OVERLAP_SEARCH -> (none: failed)
      -> CONFLICT_CHECK -> (busy: failed) -> BOOK -> CALENDAR_SYNC -> NOTIFY

Booking (request, accepted proposal, meeting) is one transaction. Calendar
sync runs after the commit and never undoes the booking; its outcome is
recorded in ``Meeting.calendar_sync_status`` and can be retried with
:meth:`AutomaticScheduler.retry_calendar_sync`.

Database work uses the synchronous session factory. Discovery runs in a
worker thread; the per-pair reads and writes are short sessions made
directly on the event loop between awaits.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from matchmaker.availability import Slot, find_overlap, windows_for
from matchmaker.calendars import CalendarAdapter, CalendarEvent, CreatedEvent
from matchmaker.config import Settings
from matchmaker.credentials import CredentialStore, Credentials
from matchmaker.db import SessionFactory, session_scope
from matchmaker.errors import DuplicateRequestError, NotFoundError
from matchmaker.matcher import MatchEngine
from matchmaker.models import (
    ACCEPTED, CANCELLED, CONFIRMED, SYNC_FAILED, SYNC_NONE, SYNC_SYNCED,
    Meeting, MeetingRequest, TimeProposal, User,
)
from matchmaker.services import (
    AUTO_MEETING_SCHEDULED, company_snapshot, create_notification, find_request_between,
    get_company_profile, get_investor_profile, investor_snapshot, list_opted_in_users,
)
from matchmaker.utils import as_utc, utcnow

log = logging.getLogger(__name__)

SCHEDULED = "scheduled"
FAILED = "failed"
SKIPPED = "skipped"

AUTO_MESSAGE = "Auto-scheduled meeting based on availability and preferences"


@dataclass
class PotentialMatch:
    investor_id: int
    company_id: int
    slot: Slot
    match_score: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "investor_id": self.investor_id, "company_id": self.company_id,
            "slot": self.slot.to_dict(), "match_score": self.match_score,
        }


@dataclass
class AutoMatchResult:
    investor_id: int
    company_id: int
    status: str  # scheduled | failed | skipped
    suggested_time: datetime | None = None
    meeting_id: int | None = None
    calendar_sync_status: str = SYNC_NONE
    match_score: int | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["suggested_time"] = self.suggested_time.isoformat() if self.suggested_time else None
        return data


def summarize(results: list[AutoMatchResult]) -> dict[str, int]:
    counts = {SCHEDULED: 0, FAILED: 0, SKIPPED: 0}
    for r in results:
        counts[r.status] = counts.get(r.status, 0) + 1
    return counts


class AutomaticScheduler:
    def __init__(
        self,
        session_factory: SessionFactory,
        engine: MatchEngine,
        credential_store: CredentialStore,
        calendar: CalendarAdapter,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.engine = engine
        self.credential_store = credential_store
        self.calendar = calendar
        self.settings = settings
        self._clock = clock

    # -- helpers ---------------------------------------------------------------

    def _overlap(self, session: Session, investor_id: int, company_id: int) -> Slot | None:
        return find_overlap(
            windows_for(session, investor_id), windows_for(session, company_id),
            now=self._clock(), slot_minutes=self.settings.slot_minutes,
        )

    def _match_score(self, session: Session, investor_id: int, company_id: int) -> int | None:
        investor = get_investor_profile(session, investor_id)
        company = get_company_profile(session, company_id)
        if investor is None or company is None:
            return None
        return self.engine.calculate_match(investor_snapshot(investor), company_snapshot(company)).overall

    # -- discovery -------------------------------------------------------------

    def find_potential_matches(self) -> list[PotentialMatch]:
        """Opted-in investor/company pairs with no prior request and overlapping availability."""
        matches: list[PotentialMatch] = []
        try:
            with session_scope(self._session_factory) as session:
                investors, companies = list_opted_in_users(session)
                for investor in investors:
                    for company in companies:
                        if investor.id == company.id:
                            continue
                        if find_request_between(session, investor.id, company.id):
                            continue
                        slot = self._overlap(session, investor.id, company.id)
                        if slot is None:
                            continue
                        score = self._match_score(session, investor.id, company.id)
                        if score is not None and score < self.settings.min_match_score:
                            log.debug("Pair %s/%s below min score (%s)", investor.id, company.id, score)
                            continue
                        matches.append(PotentialMatch(investor.id, company.id, slot, score))
        except Exception:
            log.exception("Match discovery failed")
            return []
        log.info("Found %d potential auto-arranged pairs", len(matches))
        return matches

    # -- booking ---------------------------------------------------------------

    def _book(self, investor_id: int, company_id: int, slot: Slot) -> int:
        """Persist the confirmed request, accepted proposal and meeting; return the meeting id."""
        with session_scope(self._session_factory) as session:
            if find_request_between(session, investor_id, company_id):
                raise DuplicateRequestError(f"Request between {investor_id} and {company_id} appeared")
            req = MeetingRequest(
                from_user_id=investor_id, to_user_id=company_id,
                from_role="INVESTOR", to_role="COMPANY",
                message=AUTO_MESSAGE, status=CONFIRMED, updated_at=self._clock(),
            )
            session.add(req)
            session.flush()
            session.add(TimeProposal(
                meeting_request_id=req.id, proposed_by_user_id=investor_id,
                start_time=slot.start, end_time=slot.end, timezone="UTC", status=ACCEPTED,
            ))
            meeting = Meeting(
                meeting_request_id=req.id,
                participant_a_id=investor_id, participant_b_id=company_id,
                start_time=slot.start, end_time=slot.end, timezone="UTC",
                status=CONFIRMED, calendar_sync_status=SYNC_NONE,
            )
            session.add(meeting)
            session.commit()
            return meeting.id

    def _notify(self, meeting_id: int, participant_ids: tuple[int, int]) -> None:
        try:
            with session_scope(self._session_factory) as session:
                for user_id in participant_ids:
                    create_notification(session, user_id, AUTO_MEETING_SCHEDULED, {
                        "title": "Meeting Scheduled",
                        "message": "A meeting has been automatically scheduled",
                        "meeting_id": meeting_id,
                    })
                session.commit()
        except Exception as exc:
            log.warning("Notifications for meeting %s were not queued: %s", meeting_id, exc)

    async def _sync_calendars(
        self, meeting_id: int, creds_a: Credentials | None, creds_b: Credentials | None,
    ) -> str:
        """Create the event on each participant's calendar that does not have one yet.

        Event ids are stored per participant, so a retry after a one-sided
        failure only writes to the side that failed.
        """
        with session_scope(self._session_factory) as session:
            meeting = session.get(Meeting, meeting_id)
            if meeting is None:
                raise NotFoundError(f"Meeting {meeting_id} not found")
            a_id, b_id = meeting.participant_a_id, meeting.participant_b_id
            start, end = as_utc(meeting.start_time), as_utc(meeting.end_time)
            done = {"a": bool(meeting.calendar_event_id_a), "b": bool(meeting.calendar_event_id_b)}
            user_a, user_b = session.get(User, a_id), session.get(User, b_id)
            label_a = (user_a.name if user_a else "") or f"user {a_id}"
            label_b = (user_b.name if user_b else "") or f"user {b_id}"
            email_a = user_a.email if user_a else ""
            email_b = user_b.email if user_b else ""

        description = "Auto-scheduled meeting"
        pending: dict[str, Any] = {}
        if not done["a"] and creds_a is not None:
            pending["a"] = self.calendar.create_event(a_id, creds_a, CalendarEvent(
                summary=f"Meeting with {label_b}", start=start, end=end,
                description=description, attendees=(email_b,) if email_b else (),
            ))
        if not done["b"] and creds_b is not None:
            pending["b"] = self.calendar.create_event(b_id, creds_b, CalendarEvent(
                summary=f"Meeting with {label_a}", start=start, end=end,
                description=description, attendees=(email_a,) if email_a else (),
            ))
        results = dict(zip(pending, await asyncio.gather(*pending.values(), return_exceptions=True)))

        created: dict[str, CreatedEvent] = {}
        for side, result in results.items():
            if isinstance(result, Exception):
                log.warning("Calendar sync for meeting %s (side %s) failed: %s", meeting_id, side, result)
            else:
                created[side] = result
        link = next((ev.conference_link for ev in created.values() if ev.conference_link), None)

        with session_scope(self._session_factory) as session:
            meeting = session.get(Meeting, meeting_id)
            if "a" in created:
                meeting.calendar_event_id_a = created["a"].id or "unknown"
            if "b" in created:
                meeting.calendar_event_id_b = created["b"].id or "unknown"
            synced = bool(meeting.calendar_event_id_a) and bool(meeting.calendar_event_id_b)
            status = SYNC_SYNCED if synced else SYNC_FAILED
            meeting.calendar_sync_status = status
            if link and not meeting.location_url:
                meeting.location_type = "google_meet"
                meeting.location_url = link
            session.commit()
        return status

    async def schedule_auto_meeting(self, investor_id: int, company_id: int) -> AutoMatchResult:
        """Book one pair end to end. Never raises; failures become a ``failed`` result."""
        slot: Slot | None = None
        score: int | None = None
        try:
            with session_scope(self._session_factory) as session:
                if find_request_between(session, investor_id, company_id):
                    return AutoMatchResult(
                        investor_id, company_id, SKIPPED, reason="meeting request already exists",
                    )
                slot = self._overlap(session, investor_id, company_id)
                score = self._match_score(session, investor_id, company_id)
            if slot is None:
                return AutoMatchResult(
                    investor_id, company_id, FAILED, match_score=score,
                    reason="no overlapping availability",
                )

            investor_creds, company_creds = await asyncio.gather(
                self.credential_store.get_credentials(investor_id),
                self.credential_store.get_credentials(company_id),
            )
            both_connected = investor_creds is not None and company_creds is not None
            check_a, check_b = (investor_creds, company_creds) if both_connected else (None, None)
            investor_free, company_free = await asyncio.gather(
                self.calendar.is_time_available(investor_id, check_a, slot.start, slot.end),
                self.calendar.is_time_available(company_id, check_b, slot.start, slot.end),
            )
            if not (investor_free and company_free):
                return AutoMatchResult(
                    investor_id, company_id, FAILED, suggested_time=slot.start,
                    match_score=score, reason="calendar conflict",
                )

            try:
                meeting_id = self._book(investor_id, company_id, slot)
            except DuplicateRequestError:
                return AutoMatchResult(
                    investor_id, company_id, SKIPPED, suggested_time=slot.start,
                    match_score=score, reason="meeting request already exists",
                )
            log.info("Booked meeting %s for %s/%s at %s", meeting_id, investor_id, company_id, slot.start)

            sync_status = SYNC_NONE
            if both_connected:
                sync_status = await self._sync_calendars(meeting_id, investor_creds, company_creds)

            self._notify(meeting_id, (investor_id, company_id))
            return AutoMatchResult(
                investor_id, company_id, SCHEDULED, suggested_time=slot.start,
                meeting_id=meeting_id, calendar_sync_status=sync_status, match_score=score,
            )
        except Exception as exc:
            log.warning("Auto-scheduling %s/%s failed: %s", investor_id, company_id, exc)
            return AutoMatchResult(
                investor_id, company_id, FAILED,
                suggested_time=slot.start if slot else None, match_score=score, reason=str(exc),
            )

    async def run_scheduler(self) -> list[AutoMatchResult]:
        """Process every potential pair in turn; stops early on the run timeout."""
        results: list[AutoMatchResult] = []
        try:
            async with asyncio.timeout(self.settings.scheduler_run_timeout_seconds):
                # discovery walks every opted-in pair; keep it off the event loop
                matches = await asyncio.to_thread(self.find_potential_matches)
                for match in matches:
                    results.append(await self.schedule_auto_meeting(match.investor_id, match.company_id))
                    await asyncio.sleep(self.settings.scheduler_pair_delay_seconds)
        except TimeoutError:
            log.warning("Scheduler run timed out after %d pairs", len(results))
        log.info("Scheduler run finished: %s", summarize(results))
        return results

    async def retry_calendar_sync(self, meeting_id: int) -> str:
        """Re-run calendar sync for a meeting that is not yet synced.

        Only participants without a stored event id are written to. Returns the
        resulting ``calendar_sync_status``; a meeting is left unchanged while a
        participant that still needs an event has no connected calendar.
        """
        with session_scope(self._session_factory) as session:
            meeting = session.get(Meeting, meeting_id)
            if meeting is None:
                raise NotFoundError(f"Meeting {meeting_id} not found")
            if meeting.status == CANCELLED:
                raise ValueError(f"Meeting {meeting_id} is cancelled")
            if meeting.calendar_sync_status == SYNC_SYNCED:
                return SYNC_SYNCED
            a_id, b_id = meeting.participant_a_id, meeting.participant_b_id
            need_a, need_b = not meeting.calendar_event_id_a, not meeting.calendar_event_id_b
            current = meeting.calendar_sync_status

        creds_a, creds_b = await asyncio.gather(
            self.credential_store.get_credentials(a_id),
            self.credential_store.get_credentials(b_id),
        )
        if (need_a and creds_a is None) or (need_b and creds_b is None):
            log.info("Meeting %s: calendar sync needs both participants connected", meeting_id)
            return current
        return await self._sync_calendars(meeting_id, creds_a, creds_b)
