from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Generator
from urllib.parse import quote

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from matchmaker import services
from matchmaker.availability import set_windows, window_to_dict
from matchmaker.db import get_session, init_db
from matchmaker.errors import (
    CalendarError, DuplicateRequestError, NotFoundError, OAuthError, OAuthNotConfiguredError,
    PermissionDeniedError,
)
from matchmaker.models import AvailabilityWindow, User
from matchmaker.runtime import Runtime, build_runtime
from matchmaker.scheduler import summarize
from matchmaker.schemas import (
    ArrangementPreferences,
    AutoMatchResultOut,
    AvailabilityUpdate,
    AvailabilityWindowOut,
    CacheStatsOut,
    CalendarSettingsUpdate,
    MatchOut,
    MeetingOut,
    MeetingRequestCreate,
    MeetingRequestOut,
    MeetingRequestUpdate,
    MeetingRequestUpdateOut,
    NotificationOut,
    OAuthStatusOut,
    PotentialMatchOut,
    RecommendationOut,
    SchedulePairIn,
    SchedulerRunOut,
    TimeProposalCreate,
    TimeProposalOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.runtime = build_runtime()
    yield


app = FastAPI(
    title="Matchmaker",
    version="0.1.0",
    description=(
        "Investor/company matching and automatic meeting scheduling. "
        "Callers are identified by the X-User-Id header set by the upstream gateway."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Matching", "description": "Match scores and recommendations."},
        {"name": "Availability", "description": "Weekly availability and auto-arrangement opt-in."},
        {"name": "Meetings", "description": "Meeting requests, time proposals and booked meetings."},
        {"name": "Notifications", "description": "Queued in-app notifications."},
        {"name": "OAuth", "description": "Google Calendar connection."},
        {"name": "Admin", "description": "Scheduler runs and cache maintenance. Admin role required."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def current_user(
    x_user_id: int | None = Header(default=None),
    session: Session = Depends(db_session),
) -> User:
    if x_user_id is None:
        raise HTTPException(401, "Not authenticated")
    user = session.get(User, x_user_id)
    if user is None:
        raise HTTPException(401, "Unknown user")
    return user


def admin_user(user: User = Depends(current_user)) -> User:
    if not services.has_role(user, "admin"):
        raise HTTPException(403, "Admin role required")
    return user


@contextmanager
def _http_errors():
    """Translate domain errors raised inside the block into HTTP errors."""
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(404, str(exc)) from exc
    except PermissionDeniedError as exc:
        raise HTTPException(403, str(exc)) from exc
    except DuplicateRequestError as exc:
        raise HTTPException(409, str(exc)) from exc
    except OAuthNotConfiguredError as exc:
        raise HTTPException(503, str(exc)) from exc
    except (OAuthError, CalendarError) as exc:
        raise HTTPException(502, str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Admin"], summary="Liveness check")
async def health():
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Matching
# ---------------------------------------------------------------------------


@app.get("/api/matches/{investor_id}/{company_id}", response_model=MatchOut,
         tags=["Matching"], summary="Match score between one investor and one company")
async def get_match(investor_id: int, company_id: int, user: User = Depends(current_user),
                    session: Session = Depends(db_session), runtime: Runtime = Depends(get_runtime)):
    with _http_errors():
        score = services.get_match(session, runtime.engine, investor_id, company_id)
    return {"investor_id": investor_id, "company_id": company_id, "match_score": score.to_dict()}


@app.get("/api/investors/me/recommendations", response_model=list[RecommendationOut],
         tags=["Matching"], summary="Best-matching companies for the calling investor")
async def recommendations(limit: int | None = Query(None, ge=1, le=100), user: User = Depends(current_user),
                          session: Session = Depends(db_session), runtime: Runtime = Depends(get_runtime)):
    return services.get_recommended_companies(
        session, runtime.engine, user.id, limit or runtime.settings.recommendation_limit,
    )


@app.get("/api/admin/match-cache", response_model=CacheStatsOut,
         tags=["Admin"], summary="Match score cache statistics")
async def match_cache_stats(user: User = Depends(admin_user), runtime: Runtime = Depends(get_runtime)):
    return runtime.engine.cache_stats()


@app.delete("/api/admin/match-cache", tags=["Admin"], summary="Drop every cached match score")
async def clear_match_cache(user: User = Depends(admin_user), runtime: Runtime = Depends(get_runtime)):
    runtime.engine.clear_cache()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Availability & preferences
# ---------------------------------------------------------------------------


@app.get("/api/users/me/availability", response_model=list[AvailabilityWindowOut],
         tags=["Availability"], summary="The caller's weekly availability windows")
async def get_availability(user: User = Depends(current_user), session: Session = Depends(db_session)):
    rows = session.execute(
        select(AvailabilityWindow)
        .where(AvailabilityWindow.user_id == user.id)
        .order_by(AvailabilityWindow.day_of_week)
    ).scalars().all()
    return [window_to_dict(r) for r in rows]


@app.put("/api/users/me/availability", response_model=list[AvailabilityWindowOut],
         tags=["Availability"], summary="Replace the caller's weekly availability windows")
async def put_availability(body: AvailabilityUpdate, user: User = Depends(current_user),
                           session: Session = Depends(db_session)):
    with _http_errors():
        rows = set_windows(session, user.id, [w.model_dump() for w in body.windows])
    return [window_to_dict(r) for r in rows]


@app.post("/api/users/me/arrangement-preferences", tags=["Availability"],
          summary="Opt in or out of automatic meeting arrangement")
async def arrangement_preferences(body: ArrangementPreferences, user: User = Depends(current_user),
                                  session: Session = Depends(db_session)):
    with _http_errors():
        updated = services.set_arrange_meetings(session, user.id, body.arrange_meetings)
    return {"message": "Preferences updated", "arrange_meetings": updated.arrange_meetings}


# ---------------------------------------------------------------------------
# Routes: Meetings
# ---------------------------------------------------------------------------


@app.post("/api/meetings/requests", response_model=MeetingRequestOut, status_code=201,
          tags=["Meetings"], summary="Request a meeting with another user")
async def create_meeting_request(body: MeetingRequestCreate, user: User = Depends(current_user),
                                 session: Session = Depends(db_session)):
    with _http_errors():
        req = services.create_meeting_request(
            session, user.id, body.to_user_id,
            from_role=body.from_role, to_role=body.to_role, message=body.message,
            proposed_start=body.proposed_start, proposed_end=body.proposed_end, timezone=body.timezone,
        )
    return services.meeting_request_summary(req)


@app.get("/api/meetings/requests", response_model=list[MeetingRequestOut],
         tags=["Meetings"], summary="Meeting requests sent or received by the caller")
async def list_meeting_requests(user: User = Depends(current_user), session: Session = Depends(db_session)):
    return [services.meeting_request_summary(r) for r in services.list_meeting_requests(session, user.id)]


@app.patch("/api/meetings/requests/{request_id}", response_model=MeetingRequestUpdateOut,
           tags=["Meetings"], summary="Confirm, decline or cancel a meeting request")
async def update_meeting_request(request_id: int, body: MeetingRequestUpdate,
                                 user: User = Depends(current_user), session: Session = Depends(db_session)):
    with _http_errors():
        req, meeting = services.update_meeting_request_status(
            session, request_id, user.id, body.status,
            start_time=body.start_time, end_time=body.end_time, timezone=body.timezone,
            location_type=body.location_type, location_url=body.location_url,
        )
    return {
        "meeting_request": services.meeting_request_summary(req),
        "meeting": services.meeting_summary(meeting) if meeting else None,
    }


@app.post("/api/meetings/requests/{request_id}/proposals", response_model=TimeProposalOut, status_code=201,
          tags=["Meetings"], summary="Propose a (new) time for a meeting request")
async def propose_time(request_id: int, body: TimeProposalCreate, user: User = Depends(current_user),
                       session: Session = Depends(db_session)):
    with _http_errors():
        proposal = services.propose_time(
            session, request_id, user.id, body.start_time, body.end_time, body.timezone,
        )
    return services.proposal_summary(proposal)


@app.post("/api/meetings/requests/{request_id}/proposals/{proposal_id}/accept", response_model=MeetingOut,
          tags=["Meetings"], summary="Accept a time proposal and book the meeting")
async def accept_proposal(request_id: int, proposal_id: int, user: User = Depends(current_user),
                          session: Session = Depends(db_session)):
    with _http_errors():
        meeting = services.accept_proposal(session, request_id, proposal_id, user.id)
    return services.meeting_summary(meeting)


@app.post("/api/meetings/requests/{request_id}/proposals/{proposal_id}/decline", response_model=TimeProposalOut,
          tags=["Meetings"], summary="Decline a time proposal")
async def decline_proposal(request_id: int, proposal_id: int, user: User = Depends(current_user),
                           session: Session = Depends(db_session)):
    with _http_errors():
        proposal = services.decline_proposal(session, request_id, proposal_id, user.id)
    return services.proposal_summary(proposal)


@app.get("/api/users/me/meetings", response_model=list[MeetingOut],
         tags=["Meetings"], summary="The caller's upcoming meetings")
async def my_meetings(include_past: bool = False, user: User = Depends(current_user),
                      session: Session = Depends(db_session)):
    meetings = services.list_meetings_for_user(session, user.id, upcoming_only=not include_past)
    return [services.meeting_summary(m) for m in meetings]


@app.post("/api/meetings/{meeting_id}/calendar-sync", response_model=MeetingOut,
          tags=["Meetings"], summary="Retry pushing a booked meeting to both calendars")
async def retry_calendar_sync(meeting_id: int, user: User = Depends(current_user),
                              session: Session = Depends(db_session), runtime: Runtime = Depends(get_runtime)):
    with _http_errors():
        meeting = services.get_meeting(session, meeting_id)
        if user.id not in (meeting.participant_a_id, meeting.participant_b_id) \
                and not services.has_role(user, "admin"):
            raise PermissionDeniedError("Only participants may sync this meeting")
        await runtime.scheduler.retry_calendar_sync(meeting_id)
    session.expire_all()
    return services.meeting_summary(services.get_meeting(session, meeting_id))


# ---------------------------------------------------------------------------
# Routes: Notifications
# ---------------------------------------------------------------------------


@app.get("/api/notifications", response_model=list[NotificationOut],
         tags=["Notifications"], summary="The caller's notifications, newest first")
async def list_notifications(limit: int = Query(20, ge=1, le=200), offset: int = Query(0, ge=0),
                             user: User = Depends(current_user), session: Session = Depends(db_session)):
    return [services.notification_summary(n) for n in services.list_notifications(session, user.id, limit, offset)]


@app.patch("/api/notifications/{notification_id}/read", response_model=NotificationOut,
           tags=["Notifications"], summary="Mark one notification as read")
async def mark_notification_read(notification_id: int, user: User = Depends(current_user),
                                 session: Session = Depends(db_session)):
    with _http_errors():
        notification = services.mark_notification_read(session, notification_id, user.id)
    return services.notification_summary(notification)


@app.post("/api/notifications/mark-all-read", tags=["Notifications"],
          summary="Mark every notification of the caller as read")
async def mark_all_read(user: User = Depends(current_user), session: Session = Depends(db_session)):
    return {"updated_count": services.mark_all_notifications_read(session, user.id)}


# ---------------------------------------------------------------------------
# Routes: OAuth
# ---------------------------------------------------------------------------


def _status(runtime: Runtime, user_id: int) -> dict:
    settings = runtime.credentials.get_calendar_settings(user_id)
    return {
        "connected": runtime.credentials.has_credentials(user_id),
        "calendar_email": settings.calendar_email if settings else None,
        "calendar_id": settings.calendar_id if settings else None,
        "sync_external_calendar": settings.sync_external_calendar if settings else None,
        "auto_accept_meetings": settings.auto_accept_meetings if settings else None,
    }


@app.get("/api/oauth/authorize", tags=["OAuth"], summary="Google consent URL for the caller")
async def oauth_authorize(user: User = Depends(current_user), runtime: Runtime = Depends(get_runtime)):
    with _http_errors():
        url = runtime.oauth.authorization_url(runtime.oauth.encode_state(user.id))
    return {"auth_url": url}


@app.get("/api/oauth/callback", tags=["OAuth"], summary="Google OAuth redirect target")
async def oauth_callback(request: Request, code: str | None = None, state: str | None = None,
                         runtime: Runtime = Depends(get_runtime)):
    if not code or not state:
        raise HTTPException(400, "Missing code or state")
    try:
        user_id = runtime.oauth.decode_state(state)
    except OAuthError as exc:
        raise HTTPException(400, str(exc)) from exc
    origin = (runtime.settings.app_url or str(request.base_url)).rstrip("/")
    try:
        creds = await runtime.oauth.exchange_code(code)
    except OAuthNotConfiguredError as exc:
        raise HTTPException(503, str(exc)) from exc
    except OAuthError as exc:
        log.warning("OAuth code exchange failed for user %s: %s", user_id, exc)
        return RedirectResponse(f"{origin}/dashboard/settings?oauth=error&message={quote(str(exc))}")

    runtime.credentials.store_credentials(user_id, creds)
    email = await runtime.oauth.fetch_email(creds)
    if email:
        runtime.credentials.save_calendar_settings(user_id, calendar_email=email, sync_external_calendar=True)
    log.info("Google Calendar connected for user %s", user_id)
    return RedirectResponse(f"{origin}/dashboard/settings?oauth=success")


@app.get("/api/oauth/status", response_model=OAuthStatusOut, tags=["OAuth"],
         summary="Whether the caller has connected a calendar")
async def oauth_status(user: User = Depends(current_user), runtime: Runtime = Depends(get_runtime)):
    return _status(runtime, user.id)


@app.post("/api/oauth/disconnect", tags=["OAuth"], summary="Forget the caller's Google tokens")
async def oauth_disconnect(user: User = Depends(current_user), runtime: Runtime = Depends(get_runtime)):
    deleted = runtime.credentials.delete_credentials(user.id)
    return {"message": "OAuth credentials deleted", "deleted": deleted}


@app.post("/api/oauth/settings", response_model=OAuthStatusOut, tags=["OAuth"],
          summary="Update the caller's calendar settings")
async def oauth_settings(body: CalendarSettingsUpdate, user: User = Depends(current_user),
                         runtime: Runtime = Depends(get_runtime)):
    with _http_errors():
        runtime.credentials.save_calendar_settings(user.id, **body.model_dump())
    return _status(runtime, user.id)


# ---------------------------------------------------------------------------
# Routes: Scheduler
# ---------------------------------------------------------------------------


@app.post("/api/admin/scheduler/run", response_model=SchedulerRunOut,
          tags=["Admin"], summary="Run automatic arrangement over every opted-in pair")
async def run_scheduler(user: User = Depends(admin_user), runtime: Runtime = Depends(get_runtime)):
    results = await runtime.scheduler.run_scheduler()
    return {"results": [r.to_dict() for r in results], **summarize(results)}


@app.get("/api/admin/scheduler/pairs", response_model=list[PotentialMatchOut],
         tags=["Admin"], summary="Pairs the next scheduler run would try to book")
async def potential_pairs(user: User = Depends(admin_user), runtime: Runtime = Depends(get_runtime)):
    return [m.to_dict() for m in runtime.scheduler.find_potential_matches()]


@app.post("/api/admin/scheduler/pairs", response_model=AutoMatchResultOut,
          tags=["Admin"], summary="Auto-arrange a single investor/company pair")
async def schedule_pair(body: SchedulePairIn, user: User = Depends(admin_user),
                        runtime: Runtime = Depends(get_runtime)):
    result = await runtime.scheduler.schedule_auto_meeting(body.investor_id, body.company_id)
    return result.to_dict()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("matchmaker.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
