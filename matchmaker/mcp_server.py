from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from matchmaker import services
from matchmaker.db import init_db, session_scope
from matchmaker.errors import MatchmakerError
from matchmaker.runtime import Runtime, build_runtime
from matchmaker.scheduler import summarize

log = logging.getLogger(__name__)

_runtime: Runtime | None = None


def _rt() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def matchmaker_lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _runtime
    init_db()
    _runtime = build_runtime()
    yield


mcp = FastMCP(
    "Matchmaker",
    instructions=(
        "Matchmaker scores investor/company compatibility and books meetings between "
        "mutually available, opted-in users. Use get_recommendations(investor_id) to rank "
        "companies, get_match() for a single pair, find_potential_matches() to preview "
        "the next scheduler run and run_scheduler() to book."
    ),
    lifespan=matchmaker_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("matchmaker://overview")
def matchmaker_overview() -> str:
    """Overview of Matchmaker: scoring factors, scheduler pipeline and result statuses."""
    return json.dumps({
        "system": "Matchmaker: investor/company matching and automatic scheduling",
        "scoring": {
            "weights": {"sector": 0.30, "stage": 0.25, "ticket_size": 0.25,
                        "geography": 0.15, "investor_type": 0.05},
            "overall": "0-100, weighted sum of factor scores rounded half-up",
            "confidence": "high / medium / low, by how complete the two profiles are",
        },
        "scheduler": [
            "1. Opted-in investors and companies are paired.",
            "2. Pairs with any earlier meeting request are skipped.",
            "3. The first overlapping weekly availability window gives a 30-minute slot.",
            "4. Connected Google calendars are checked for conflicts.",
            "5. The meeting is booked, pushed to both calendars and both users are notified.",
        ],
        "statuses": {
            "scheduled": "Meeting booked.",
            "failed": "No overlap, a calendar conflict or an error.",
            "skipped": "A meeting request already existed.",
        },
        "calendar_sync_status": ["none", "synced", "failed"],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Matching
# ---------------------------------------------------------------------------


@mcp.tool()
def get_match(investor_id: int, company_id: int) -> dict:
    """Compatibility score between one investor and one company, with per-factor breakdown."""
    with session_scope() as session:
        try:
            score = services.get_match(session, _rt().engine, investor_id, company_id)
        except MatchmakerError as exc:
            return {"error": str(exc)}
        return {"investor_id": investor_id, "company_id": company_id, "match_score": score.to_dict()}


@mcp.tool()
def get_recommendations(investor_id: int, limit: int = 4) -> list[dict]:
    """Best-matching companies for an investor, highest score first.

    Args:
        investor_id: User id of the investor.
        limit: Max results (default 4, max 100).
    """
    with session_scope() as session:
        return services.get_recommended_companies(
            session, _rt().engine, investor_id, max(1, min(limit, 100)),
        )


@mcp.tool()
def match_cache_stats() -> dict:
    """Size and TTL of the match score cache."""
    return _rt().engine.cache_stats()


# ---------------------------------------------------------------------------
# Tools: Scheduling
# ---------------------------------------------------------------------------


@mcp.tool()
def find_potential_matches() -> list[dict]:
    """Pairs the next scheduler run would try to book, with their proposed slot."""
    return [m.to_dict() for m in _rt().scheduler.find_potential_matches()]


@mcp.tool()
async def schedule_pair(investor_id: int, company_id: int) -> dict:
    """Auto-arrange a meeting for one investor/company pair."""
    result = await _rt().scheduler.schedule_auto_meeting(investor_id, company_id)
    return result.to_dict()


@mcp.tool()
async def run_scheduler() -> dict:
    """Run automatic arrangement over every opted-in pair and report the outcome."""
    results = await _rt().scheduler.run_scheduler()
    return {"results": [r.to_dict() for r in results], **summarize(results)}


@mcp.tool()
def list_meetings(user_id: int, include_past: bool = False) -> list[dict]:
    """Meetings a user takes part in, soonest first."""
    with session_scope() as session:
        meetings = services.list_meetings_for_user(session, user_id, upcoming_only=not include_past)
        return [services.meeting_summary(m) for m in meetings]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Matchmaker MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
