"""Composition root: builds the engine, credential store, calendar adapter and scheduler."""
from __future__ import annotations

from dataclasses import dataclass

import httpx

from matchmaker.cache import ScoreCache
from matchmaker.calendars import CalendarAdapter
from matchmaker.config import Settings, get_settings
from matchmaker.credentials import CredentialStore, GoogleOAuthClient
from matchmaker.db import SessionFactory, get_session
from matchmaker.matcher import MatchEngine
from matchmaker.scheduler import AutomaticScheduler


@dataclass
class Runtime:
    settings: Settings
    session_factory: SessionFactory
    engine: MatchEngine
    oauth: GoogleOAuthClient
    credentials: CredentialStore
    calendar: CalendarAdapter
    scheduler: AutomaticScheduler


def build_runtime(
    session_factory: SessionFactory | None = None,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    """Wire every component from *settings*; *transport* replaces the network in tests."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session
    engine = MatchEngine(ScoreCache(ttl_seconds=settings.match_cache_ttl_seconds))
    oauth = GoogleOAuthClient(settings, transport=transport)
    credentials = CredentialStore(session_factory, oauth)
    calendar = CalendarAdapter(session_factory, settings, credentials, transport=transport)
    scheduler = AutomaticScheduler(session_factory, engine, credentials, calendar, settings)
    return Runtime(
        settings=settings, session_factory=session_factory, engine=engine, oauth=oauth,
        credentials=credentials, calendar=calendar, scheduler=scheduler,
    )
