"""Pydantic request/response schemas for the Matchmaker API."""
from __future__ import annotations

from typing import Any

from pydantic import AwareDatetime, BaseModel, Field, field_validator


class MatchFactorsOut(BaseModel):
    sector: int
    stage: int
    ticket_size: int
    geography: int
    investor_type: int


class MatchScoreOut(BaseModel):
    overall: int
    factors: MatchFactorsOut
    confidence: str


class MatchOut(BaseModel):
    investor_id: int
    company_id: int
    match_score: MatchScoreOut


class RecommendationOut(BaseModel):
    user_id: int
    company_name: str
    sector: str
    stage: str
    capital_sought: str
    hq_location: str
    preferred_investor_types: list[str] = []
    created_at: str | None = None
    match_score: MatchScoreOut


class CacheStatsOut(BaseModel):
    size: int
    ttl_seconds: float


class AvailabilityWindowIn(BaseModel):
    day_of_week: int = Field(ge=0, le=6, description="0 = Sunday")
    start_time: str
    end_time: str
    timezone: str = "UTC"


class AvailabilityWindowOut(AvailabilityWindowIn):
    pass


class AvailabilityUpdate(BaseModel):
    windows: list[AvailabilityWindowIn]


class ArrangementPreferences(BaseModel):
    arrange_meetings: bool = False


class MeetingRequestCreate(BaseModel):
    to_user_id: int
    from_role: str | None = None
    to_role: str | None = None
    message: str = ""
    proposed_start: AwareDatetime | None = None
    proposed_end: AwareDatetime | None = None
    timezone: str = "UTC"


class MeetingRequestUpdate(BaseModel):
    status: str
    start_time: AwareDatetime | None = None
    end_time: AwareDatetime | None = None
    timezone: str = "UTC"
    location_type: str = ""
    location_url: str = ""

    @field_validator("status")
    @classmethod
    def status_upper(cls, v: str) -> str:
        return v.strip().upper()


class TimeProposalCreate(BaseModel):
    start_time: AwareDatetime
    end_time: AwareDatetime
    timezone: str = "UTC"


class TimeProposalOut(BaseModel):
    id: int
    meeting_request_id: int
    proposed_by_user_id: int
    start_time: str
    end_time: str
    timezone: str
    status: str
    created_at: str | None = None


class MeetingRequestOut(BaseModel):
    id: int
    from_user_id: int
    to_user_id: int
    from_role: str
    to_role: str
    message: str
    status: str
    created_at: str | None = None
    updated_at: str | None = None
    proposals: list[TimeProposalOut] = []


class MeetingOut(BaseModel):
    id: int
    meeting_request_id: int | None = None
    participant_a_id: int
    participant_b_id: int
    start_time: str
    end_time: str
    timezone: str
    location_type: str
    location_url: str
    status: str
    calendar_sync_status: str
    created_at: str | None = None


class MeetingRequestUpdateOut(BaseModel):
    meeting_request: MeetingRequestOut
    meeting: MeetingOut | None = None


class NotificationOut(BaseModel):
    id: int
    user_id: int
    type: str
    data: dict[str, Any] = {}
    is_read: bool
    created_at: str | None = None


class CalendarSettingsUpdate(BaseModel):
    calendar_id: str | None = None
    timezone: str | None = None
    auto_accept_meetings: bool | None = None
    sync_external_calendar: bool | None = None


class OAuthStatusOut(BaseModel):
    connected: bool
    calendar_email: str | None = None
    calendar_id: str | None = None
    sync_external_calendar: bool | None = None
    auto_accept_meetings: bool | None = None


class AutoMatchResultOut(BaseModel):
    investor_id: int
    company_id: int
    status: str
    suggested_time: str | None = None
    meeting_id: int | None = None
    calendar_sync_status: str
    match_score: int | None = None
    reason: str = ""


class SchedulerRunOut(BaseModel):
    results: list[AutoMatchResultOut]
    scheduled: int
    failed: int
    skipped: int


class SlotOut(BaseModel):
    start: str
    end: str


class PotentialMatchOut(BaseModel):
    investor_id: int
    company_id: int
    slot: SlotOut
    match_score: int | None = None


class SchedulePairIn(BaseModel):
    investor_id: int
    company_id: int
