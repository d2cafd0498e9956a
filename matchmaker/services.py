"""Shared business logic for the Matchmaker API, MCP server, CLI and scheduler."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from matchmaker.errors import DuplicateRequestError, NotFoundError, PermissionDeniedError
from matchmaker.matcher import CompanySnapshot, InvestorSnapshot, MatchEngine, MatchScore
from matchmaker.models import (
    ACCEPTED, ACTIVE_REQUEST_STATUSES, CANCELLED, CONFIRMED, DECLINED, PENDING, REQUEST_STATUSES,
    CompanyProfile, InvestorProfile, Meeting, MeetingRequest, Notification, TimeProposal, User,
)
from matchmaker.utils import as_utc, json_list, json_parse, utcnow

log = logging.getLogger(__name__)

# Notification types
MEETING_REQUESTED = "meeting_requested"
MEETING_REQUEST_UPDATED = "meeting_request_updated"
RESCHEDULE_REQUESTED = "meeting_reschedule_requested"
RESCHEDULE_ACCEPTED = "meeting_reschedule_accepted"
RESCHEDULE_DECLINED = "meeting_reschedule_declined"
AUTO_MEETING_SCHEDULED = "auto_meeting_scheduled"

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def company_summary(profile: CompanyProfile) -> dict:
    return {
        "user_id": profile.user_id, "company_name": profile.company_name,
        "sector": profile.sector, "stage": profile.stage,
        "capital_sought": profile.capital_sought, "hq_location": profile.hq_location,
        "preferred_investor_types": json_list(profile.preferred_investor_types_json),
        "created_at": _iso(profile.created_at),
    }


def proposal_summary(p: TimeProposal) -> dict:
    return {
        "id": p.id, "meeting_request_id": p.meeting_request_id,
        "proposed_by_user_id": p.proposed_by_user_id,
        "start_time": _iso(p.start_time), "end_time": _iso(p.end_time),
        "timezone": p.timezone, "status": p.status, "created_at": _iso(p.created_at),
    }


def meeting_request_summary(req: MeetingRequest) -> dict:
    return {
        "id": req.id, "from_user_id": req.from_user_id, "to_user_id": req.to_user_id,
        "from_role": req.from_role, "to_role": req.to_role, "message": req.message,
        "status": req.status, "created_at": _iso(req.created_at), "updated_at": _iso(req.updated_at),
        "proposals": [proposal_summary(p) for p in req.proposals],
    }


def meeting_summary(m: Meeting) -> dict:
    return {
        "id": m.id, "meeting_request_id": m.meeting_request_id,
        "participant_a_id": m.participant_a_id, "participant_b_id": m.participant_b_id,
        "start_time": _iso(m.start_time), "end_time": _iso(m.end_time), "timezone": m.timezone,
        "location_type": m.location_type, "location_url": m.location_url,
        "status": m.status, "calendar_sync_status": m.calendar_sync_status,
        "created_at": _iso(m.created_at),
    }


def notification_summary(n: Notification) -> dict:
    return {
        "id": n.id, "user_id": n.user_id, "type": n.type,
        "data": json_parse(n.data_json, {}), "is_read": n.is_read,
        "created_at": _iso(n.created_at),
    }


# ---------------------------------------------------------------------------
# Users & profiles
# ---------------------------------------------------------------------------


def has_role(user: User, role: str) -> bool:
    return role in (user.role or "").lower()


def get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def get_investor_profile(session: Session, user_id: int) -> InvestorProfile | None:
    return session.get(InvestorProfile, user_id)


def get_company_profile(session: Session, user_id: int) -> CompanyProfile | None:
    return session.get(CompanyProfile, user_id)


def investor_snapshot(profile: InvestorProfile) -> InvestorSnapshot:
    return InvestorSnapshot(
        user_id=profile.user_id,
        firm=profile.firm or None,
        sectors=tuple(json_list(profile.sectors_json)),
        stages=tuple(json_list(profile.stages_json)),
        check_size_min=profile.check_size_min,
        check_size_max=profile.check_size_max,
        geographies=tuple(json_list(profile.geographies_json)),
        created_at=as_utc(profile.created_at),
    )


def company_snapshot(profile: CompanyProfile) -> CompanySnapshot:
    return CompanySnapshot(
        user_id=profile.user_id,
        name=profile.company_name or None,
        sector=profile.sector or None,
        stage=profile.stage or None,
        capital_sought=profile.capital_sought or None,
        hq_location=profile.hq_location or None,
        preferred_investor_types=tuple(json_list(profile.preferred_investor_types_json)),
        created_at=as_utc(profile.created_at),
    )


def list_opted_in_users(session: Session) -> tuple[list[User], list[User]]:
    """Users with ``arrange_meetings`` on, split into (investors, companies)."""
    users = session.execute(
        select(User).where(User.arrange_meetings.is_(True)).order_by(User.id)
    ).scalars().all()
    investors = [u for u in users if has_role(u, "investor")]
    companies = [u for u in users if has_role(u, "company")]
    return investors, companies


def set_arrange_meetings(session: Session, user_id: int, enabled: bool) -> User:
    user = get_user(session, user_id)
    user.arrange_meetings = enabled
    user.updated_at = utcnow()
    session.commit()
    log.info("User %s arrange_meetings=%s", user_id, enabled)
    return user


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def get_match(session: Session, engine: MatchEngine, investor_id: int, company_id: int) -> MatchScore:
    investor = get_investor_profile(session, investor_id)
    if investor is None:
        raise NotFoundError(f"Investor profile {investor_id} not found")
    company = get_company_profile(session, company_id)
    if company is None:
        raise NotFoundError(f"Company profile {company_id} not found")
    return engine.calculate_match(investor_snapshot(investor), company_snapshot(company))


def get_recommended_companies(
    session: Session, engine: MatchEngine, investor_user_id: int, limit: int = 4,
) -> list[dict]:
    """Top *limit* companies for an investor; empty if the investor has no profile."""
    investor = get_investor_profile(session, investor_user_id)
    if investor is None:
        return []
    profiles = {
        p.user_id: p for p in session.execute(select(CompanyProfile)).scalars().all()
    }
    ranked = engine.batch_calculate_matches(
        investor_snapshot(investor), [company_snapshot(p) for p in profiles.values()],
    )
    return [
        {**company_summary(profiles[r.company.user_id]), "match_score": r.score.to_dict()}
        for r in ranked[:limit]
    ]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


def create_notification(session: Session, user_id: int, kind: str, data: dict[str, Any]) -> Notification:
    """Queue a notification row; the caller commits."""
    notification = Notification(user_id=user_id, type=kind, data_json=json.dumps(data, default=str))
    session.add(notification)
    return notification


def list_notifications(session: Session, user_id: int, limit: int = 20, offset: int = 0) -> list[Notification]:
    return list(session.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit).offset(offset)
    ).scalars().all())


def mark_notification_read(session: Session, notification_id: int, user_id: int) -> Notification:
    notification = session.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise NotFoundError(f"Notification {notification_id} not found")
    notification.is_read = True
    session.commit()
    return notification


def mark_all_notifications_read(session: Session, user_id: int) -> int:
    result = session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    session.commit()
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Meeting requests
# ---------------------------------------------------------------------------


def _pair_clause(model_a, model_b, a: int, b: int):
    return or_(and_(model_a == a, model_b == b), and_(model_a == b, model_b == a))


def find_request_between(
    session: Session, a: int, b: int, statuses: tuple[str, ...] | None = None,
) -> MeetingRequest | None:
    """Any meeting request between *a* and *b* in either direction."""
    stmt = select(MeetingRequest).where(
        _pair_clause(MeetingRequest.from_user_id, MeetingRequest.to_user_id, a, b)
    )
    if statuses:
        stmt = stmt.where(MeetingRequest.status.in_(statuses))
    return session.execute(stmt.order_by(MeetingRequest.id).limit(1)).scalar_one_or_none()


def get_meeting_request(session: Session, request_id: int) -> MeetingRequest:
    req = session.get(MeetingRequest, request_id)
    if req is None:
        raise NotFoundError(f"Meeting request {request_id} not found")
    return req


def list_meeting_requests(session: Session, user_id: int) -> list[MeetingRequest]:
    return list(session.execute(
        select(MeetingRequest)
        .where(or_(MeetingRequest.from_user_id == user_id, MeetingRequest.to_user_id == user_id))
        .order_by(MeetingRequest.created_at.desc(), MeetingRequest.id.desc())
    ).scalars().all())


def _role_label(user: User, default: str) -> str:
    for role in ("investor", "company"):
        if has_role(user, role):
            return role.upper()
    return default


def _validate_times(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start, end = as_utc(start), as_utc(end)
    if start >= end:
        raise ValueError("start_time must be before end_time")
    return start, end


def _require_participant(req: MeetingRequest, actor_id: int) -> None:
    if actor_id not in (req.from_user_id, req.to_user_id):
        raise PermissionDeniedError("Only participants may act on this meeting request")


def _other_party(req: MeetingRequest, actor_id: int) -> int:
    return req.to_user_id if actor_id == req.from_user_id else req.from_user_id


def create_meeting_request(
    session: Session,
    from_user_id: int,
    to_user_id: int,
    *,
    from_role: str | None = None,
    to_role: str | None = None,
    message: str = "",
    proposed_start: datetime | None = None,
    proposed_end: datetime | None = None,
    timezone: str = "UTC",
) -> MeetingRequest:
    if from_user_id == to_user_id:
        raise ValueError("Cannot request a meeting with yourself")
    sender = get_user(session, from_user_id)
    recipient = get_user(session, to_user_id)
    if find_request_between(session, from_user_id, to_user_id, ACTIVE_REQUEST_STATUSES):
        raise DuplicateRequestError(
            f"An active meeting request already exists between {from_user_id} and {to_user_id}"
        )
    if (proposed_start is None) != (proposed_end is None):
        raise ValueError("proposed_start and proposed_end must be given together")

    req = MeetingRequest(
        from_user_id=from_user_id, to_user_id=to_user_id,
        from_role=(from_role or _role_label(sender, "INVESTOR")).upper(),
        to_role=(to_role or _role_label(recipient, "COMPANY")).upper(),
        message=message or "", status=PENDING,
    )
    session.add(req)
    session.flush()

    if proposed_start is not None:
        start, end = _validate_times(proposed_start, proposed_end)
        session.add(TimeProposal(
            meeting_request_id=req.id, proposed_by_user_id=from_user_id,
            start_time=start, end_time=end, timezone=timezone, status=PENDING,
        ))

    create_notification(session, to_user_id, MEETING_REQUESTED, {
        "meeting_request_id": req.id, "from_user_id": from_user_id, "message": req.message,
    })
    session.commit()
    session.refresh(req)
    log.info("Meeting request %s created: %s -> %s", req.id, from_user_id, to_user_id)
    return req


def create_meeting_from_request(
    session: Session,
    req: MeetingRequest,
    start: datetime,
    end: datetime,
    timezone: str = "UTC",
    location_type: str = "",
    location_url: str = "",
) -> Meeting:
    """Add a CONFIRMED meeting for the request's participants; the caller commits."""
    meeting = Meeting(
        meeting_request_id=req.id,
        participant_a_id=req.from_user_id, participant_b_id=req.to_user_id,
        start_time=as_utc(start), end_time=as_utc(end), timezone=timezone,
        location_type=location_type or "", location_url=location_url or "",
        status=CONFIRMED,
    )
    session.add(meeting)
    return meeting


def update_meeting_request_status(
    session: Session,
    request_id: int,
    actor_id: int,
    status: str,
    *,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    timezone: str = "UTC",
    location_type: str = "",
    location_url: str = "",
) -> tuple[MeetingRequest, Meeting | None]:
    """Move a request to *status*; confirming with times also books the meeting.

    The recipient confirms or declines, the requester cancels.
    """
    status = (status or "").strip().upper()
    if status not in REQUEST_STATUSES:
        raise ValueError(f"Unknown status {status!r}")
    req = get_meeting_request(session, request_id)
    _require_participant(req, actor_id)
    if status in (CONFIRMED, DECLINED) and actor_id != req.to_user_id:
        raise PermissionDeniedError("Only the recipient may accept or decline this meeting")
    if status == CANCELLED and actor_id != req.from_user_id:
        raise PermissionDeniedError("Only the requester may cancel this meeting")

    req.status = status
    req.updated_at = utcnow()

    meeting = None
    if status == CONFIRMED and start_time is not None and end_time is not None:
        start, end = _validate_times(start_time, end_time)
        meeting = create_meeting_from_request(
            session, req, start, end, timezone, location_type, location_url,
        )

    create_notification(session, _other_party(req, actor_id), MEETING_REQUEST_UPDATED, {
        "meeting_request_id": req.id, "status": status,
    })
    session.commit()
    log.info("Meeting request %s -> %s by user %s", req.id, status, actor_id)
    return req, meeting


def propose_time(
    session: Session,
    request_id: int,
    actor_id: int,
    start: datetime,
    end: datetime,
    timezone: str = "UTC",
) -> TimeProposal:
    req = get_meeting_request(session, request_id)
    _require_participant(req, actor_id)
    start, end = _validate_times(start, end)

    proposal = TimeProposal(
        meeting_request_id=req.id, proposed_by_user_id=actor_id,
        start_time=start, end_time=end, timezone=timezone or "UTC", status=PENDING,
    )
    session.add(proposal)
    session.flush()
    create_notification(session, _other_party(req, actor_id), RESCHEDULE_REQUESTED, {
        "meeting_request_id": req.id, "proposal_id": proposal.id,
        "start": start.isoformat(), "end": end.isoformat(),
    })
    session.commit()
    return proposal


def _load_proposal(session: Session, request_id: int, proposal_id: int, actor_id: int) -> tuple[MeetingRequest, TimeProposal]:
    req = get_meeting_request(session, request_id)
    proposal = session.get(TimeProposal, proposal_id)
    if proposal is None or proposal.meeting_request_id != req.id:
        raise NotFoundError(f"Proposal {proposal_id} not found")
    _require_participant(req, actor_id)
    if proposal.proposed_by_user_id == actor_id:
        raise PermissionDeniedError("The proposer cannot answer their own proposal")
    if proposal.status != PENDING:
        raise ValueError(f"Proposal {proposal_id} is already {proposal.status}")
    return req, proposal


def cancel_future_meetings(session: Session, a: int, b: int, now: datetime | None = None) -> int:
    """Cancel upcoming meetings between *a* and *b*; the caller commits."""
    now = now or utcnow()
    meetings = session.execute(
        select(Meeting).where(
            _pair_clause(Meeting.participant_a_id, Meeting.participant_b_id, a, b),
            Meeting.status != CANCELLED,
        )
    ).scalars().all()
    cancelled = 0
    for m in meetings:
        if as_utc(m.start_time) >= now:
            m.status = CANCELLED
            cancelled += 1
    return cancelled


def accept_proposal(session: Session, request_id: int, proposal_id: int, actor_id: int) -> Meeting:
    req, proposal = _load_proposal(session, request_id, proposal_id, actor_id)

    proposal.status = ACCEPTED
    req.status = CONFIRMED
    req.updated_at = utcnow()
    replaced = cancel_future_meetings(session, req.from_user_id, req.to_user_id)
    if replaced:
        log.info("Cancelled %d earlier meetings for request %s", replaced, req.id)

    meeting = create_meeting_from_request(
        session, req, proposal.start_time, proposal.end_time, proposal.timezone,
    )
    session.flush()
    create_notification(session, proposal.proposed_by_user_id, RESCHEDULE_ACCEPTED, {
        "meeting_request_id": req.id, "proposal_id": proposal.id, "meeting_id": meeting.id,
        "start": _iso(proposal.start_time), "end": _iso(proposal.end_time),
    })
    session.commit()
    return meeting


def decline_proposal(session: Session, request_id: int, proposal_id: int, actor_id: int) -> TimeProposal:
    req, proposal = _load_proposal(session, request_id, proposal_id, actor_id)
    proposal.status = DECLINED
    create_notification(session, proposal.proposed_by_user_id, RESCHEDULE_DECLINED, {
        "meeting_request_id": req.id, "proposal_id": proposal.id,
    })
    session.commit()
    return proposal


# ---------------------------------------------------------------------------
# Meetings
# ---------------------------------------------------------------------------


def get_meeting(session: Session, meeting_id: int) -> Meeting:
    meeting = session.get(Meeting, meeting_id)
    if meeting is None:
        raise NotFoundError(f"Meeting {meeting_id} not found")
    return meeting


def list_meetings_for_user(
    session: Session,
    user_id: int,
    *,
    upcoming_only: bool = True,
    limit: int = 200,
    now: datetime | None = None,
) -> list[Meeting]:
    meetings = session.execute(
        select(Meeting)
        .where(
            or_(Meeting.participant_a_id == user_id, Meeting.participant_b_id == user_id),
            Meeting.status != CANCELLED,
        )
        .order_by(Meeting.start_time)
    ).scalars().all()
    if upcoming_only:
        cutoff = now or utcnow()
        meetings = [m for m in meetings if as_utc(m.end_time) >= cutoff]
    return list(meetings[:limit])
