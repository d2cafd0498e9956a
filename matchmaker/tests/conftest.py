"""Shared fixtures: in-memory database, settings and seeded users."""
from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from matchmaker.config import Settings
from matchmaker.db import make_engine, make_session_factory
from matchmaker.models import AvailabilityWindow, CompanyProfile, InvestorProfile, User


@pytest.fixture()
def factory():
    """Session factory over a fresh in-memory database (one shared connection)."""
    engine = make_engine("sqlite://")
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def session(factory):
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def settings():
    return Settings(
        database_url="sqlite://",
        scheduler_pair_delay_seconds=0,
        calendar_request_timeout_seconds=2.0,
        google_client_id="client-id",
        google_client_secret="client-secret",
        google_redirect_uri="http://testserver/api/oauth/callback",
        oauth_state_secret="test-secret",
        app_url="http://frontend.test",
    )


def add_user(session, *, role: str, name: str = "", email: str = "", arrange: bool = False) -> User:
    user = User(role=role, name=name, email=email, arrange_meetings=arrange)
    session.add(user)
    session.flush()
    return user


def add_investor(session, *, arrange: bool = True, **profile) -> User:
    user = add_user(session, role="investor", name=profile.pop("name", "Ina Investor"),
                    email=profile.pop("email", "ina@fund.test"), arrange=arrange)
    session.add(InvestorProfile(
        user_id=user.id,
        firm=profile.get("firm", "Northwind Capital"),
        sectors_json=json.dumps(profile.get("sectors", ["SaaS"])),
        stages_json=json.dumps(profile.get("stages", ["Series A"])),
        check_size_min=profile.get("check_size_min", 1_000_000),
        check_size_max=profile.get("check_size_max", 5_000_000),
        geographies_json=json.dumps(profile.get("geographies", ["United States"])),
    ))
    session.flush()
    return user


def add_company(session, *, arrange: bool = True, created_at: datetime | None = None, **profile) -> User:
    user = add_user(session, role="company", name=profile.pop("name", "Cora Founder"),
                    email=profile.pop("email", "cora@startup.test"), arrange=arrange)
    row = CompanyProfile(
        user_id=user.id,
        company_name=profile.get("company_name", "Acme Analytics"),
        sector=profile.get("sector", "SaaS"),
        stage=profile.get("stage", "Series A"),
        capital_sought=profile.get("capital_sought", "$2M"),
        hq_location=profile.get("hq_location", "San Francisco, USA"),
        preferred_investor_types_json=json.dumps(profile.get("preferred_investor_types", [])),
    )
    if created_at is not None:
        row.created_at = created_at
    session.add(row)
    session.flush()
    return user


def add_window(session, user_id: int, day: int, start: str, end: str, tz: str = "UTC") -> None:
    session.add(AvailabilityWindow(user_id=user_id, day_of_week=day, start_time=start, end_time=end, timezone=tz))
    session.flush()


@pytest.fixture()
def pair(session):
    """An opted-in investor and company, both free on Mondays 09:00-12:00 UTC."""
    investor = add_investor(session)
    company = add_company(session)
    add_window(session, investor.id, 1, "09:00", "12:00")
    add_window(session, company.id, 1, "10:00", "11:30")
    session.commit()
    return investor.id, company.id


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)
