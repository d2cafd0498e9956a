from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# Request / proposal / meeting status values
PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
DECLINED = "DECLINED"
CANCELLED = "CANCELLED"
ACCEPTED = "ACCEPTED"

REQUEST_STATUSES = {PENDING, CONFIRMED, DECLINED, CANCELLED}
PROPOSAL_STATUSES = {PENDING, ACCEPTED, DECLINED}
ACTIVE_REQUEST_STATUSES = (PENDING, CONFIRMED)

# Meeting.calendar_sync_status
SYNC_NONE = "none"
SYNC_SYNCED = "synced"
SYNC_FAILED = "failed"


class User(Base):
    """Account row owned by the auth collaborator; read here for role and opt-in."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(300), default="")
    name: Mapped[str] = mapped_column(String(300), default="")
    role: Mapped[str] = mapped_column(String(50), default="")  # "investor" | "company" | "admin"
    arrange_meetings: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    availability: Mapped[list[AvailabilityWindow]] = relationship(
        "AvailabilityWindow", back_populates="user", cascade="all, delete-orphan",
        order_by="AvailabilityWindow.id",
    )


class InvestorProfile(Base):
    __tablename__ = "investor_profiles"

    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), primary_key=True)
    firm: Mapped[str] = mapped_column(String(300), default="")
    sectors_json: Mapped[str] = mapped_column(Text, default="[]")
    stages_json: Mapped[str] = mapped_column(Text, default="[]")
    check_size_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_size_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    geographies_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CompanyProfile(Base):
    __tablename__ = "company_profiles"

    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), primary_key=True)
    company_name: Mapped[str] = mapped_column(String(300), default="")
    sector: Mapped[str] = mapped_column(String(200), default="")
    stage: Mapped[str] = mapped_column(String(100), default="")
    capital_sought: Mapped[str] = mapped_column(String(100), default="")  # free text, e.g. "$2M"
    hq_location: Mapped[str] = mapped_column(String(300), default="")
    preferred_investor_types_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AvailabilityWindow(Base):
    __tablename__ = "availability_windows"
    __table_args__ = (UniqueConstraint("user_id", "day_of_week", name="uq_availability_user_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 = Sunday … 6 = Saturday
    start_time: Mapped[str] = mapped_column(String(8), nullable=False)  # "HH:MM"
    end_time: Mapped[str] = mapped_column(String(8), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")

    user: Mapped[User] = relationship("User", back_populates="availability")


class OAuthCredential(Base):
    __tablename__ = "oauth_credentials"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_oauth_user_provider"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), default="google")
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scope: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CalendarSettings(Base):
    __tablename__ = "calendar_settings"

    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), primary_key=True)
    calendar_id: Mapped[str] = mapped_column(String(300), default="primary")
    calendar_email: Mapped[str] = mapped_column(String(300), default="")
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    auto_accept_meetings: Mapped[bool] = mapped_column(Boolean, default=False)
    sync_external_calendar: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MeetingRequest(Base):
    __tablename__ = "meeting_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    to_user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    from_role: Mapped[str] = mapped_column(String(50), default="INVESTOR")
    to_role: Mapped[str] = mapped_column(String(50), default="COMPANY")
    message: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default=PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    proposals: Mapped[list[TimeProposal]] = relationship(
        "TimeProposal", back_populates="meeting_request", cascade="all, delete-orphan",
        order_by="TimeProposal.id",
    )


class TimeProposal(Base):
    __tablename__ = "time_proposals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    meeting_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("meeting_requests.id"), nullable=False)
    proposed_by_user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    status: Mapped[str] = mapped_column(String(20), default=PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    meeting_request: Mapped[MeetingRequest] = relationship("MeetingRequest", back_populates="proposals")


class Meeting(Base):
    __tablename__ = "meetings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    meeting_request_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("meeting_requests.id"), nullable=True,
    )
    participant_a_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    participant_b_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    location_type: Mapped[str] = mapped_column(String(50), default="")
    location_url: Mapped[str] = mapped_column(String(500), default="")
    status: Mapped[str] = mapped_column(String(20), default=CONFIRMED)
    calendar_sync_status: Mapped[str] = mapped_column(String(20), default=SYNC_NONE)
    # Google event ids per participant; empty until that side's event is created
    calendar_event_id_a: Mapped[str] = mapped_column(String(300), default="")
    calendar_event_id_b: Mapped[str] = mapped_column(String(300), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data_json: Mapped[str] = mapped_column(Text, default="{}")
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
