"""Match engine: weighted multi-factor compatibility between an investor and a company.

Architecture
------------
Each (investor, company) pair is scored on five independent factors, each
in ``[0, 100]``:

- **Sector**: exact or partial match between the investor's sectors and
  the company's sector.
- **Stage**: exact match, or distance on the stage ladder
  (seed → series a → series b → growth → late stage).
- **Ticket size**: whether the parsed ``capital_sought`` falls inside the
  investor's check-size range, decaying proportionally outside it.
- **Geography**: whether any investor geography appears in the company HQ.
- **Investor type**: whether the company's preferred investor types
  mention the investor's firm.

Missing data never fails a match; each factor falls back to a neutral
score. The overall score is the weighted sum (weights sum to 1.0) rounded
half-up, and ``confidence`` reflects how many of the seven tracked profile
fields were present.

Scores are cached per pair in an injected :class:`~matchmaker.cache.ScoreCache`.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from matchmaker.cache import ScoreCache
from matchmaker.utils import as_utc

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Weights & constants
# ---------------------------------------------------------------------------

SCORING_WEIGHTS: dict[str, float] = {
    "sector": 0.30,
    "stage": 0.25,
    "ticket_size": 0.25,
    "geography": 0.15,
    "investor_type": 0.05,
}

STAGE_LADDER = ("seed", "series a", "series b", "growth", "late stage")

_CONFIDENCE_FIELDS = 7

_CAPITAL_RE = re.compile(r"^\$?(\d+(?:\.\d+)?)(million|thousand|m|k)?")

# Country aliases rewritten before geography containment checks.
_GEO_ALIASES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bu\.?s\.?a\b\.?"), "united states"),
    (re.compile(r"\bu\.?s\b\.?"), "united states"),
    (re.compile(r"\bu\.?k\b\.?"), "united kingdom"),
    (re.compile(r"\buae\b"), "united arab emirates"),
]


# ---------------------------------------------------------------------------
# Profile snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InvestorSnapshot:
    """The investor fields the engine reads. Only ``user_id`` is required."""
    user_id: Any
    firm: str | None = None
    sectors: tuple[str, ...] = ()
    stages: tuple[str, ...] = ()
    check_size_min: float | None = None
    check_size_max: float | None = None
    geographies: tuple[str, ...] = ()
    created_at: datetime | None = None


@dataclass(frozen=True)
class CompanySnapshot:
    """The company fields the engine reads. Only ``user_id`` is required."""
    user_id: Any
    name: str | None = None
    sector: str | None = None
    stage: str | None = None
    capital_sought: str | None = None
    hq_location: str | None = None
    preferred_investor_types: tuple[str, ...] = ()
    created_at: datetime | None = None


@dataclass(frozen=True)
class MatchScore:
    overall: int
    sector: int
    stage: int
    ticket_size: int
    geography: int
    investor_type: int
    confidence: str  # "high" | "medium" | "low"

    @property
    def factors(self) -> dict[str, int]:
        return {
            "sector": self.sector,
            "stage": self.stage,
            "ticket_size": self.ticket_size,
            "geography": self.geography,
            "investor_type": self.investor_type,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"overall": self.overall, "factors": self.factors, "confidence": self.confidence}


@dataclass(frozen=True)
class RankedCompany:
    company: CompanySnapshot
    score: MatchScore = field(compare=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _norm(value: str | None) -> str:
    return (value or "").strip().lower()


def _norm_all(values: tuple[str, ...] | list[str] | None) -> list[str]:
    return [n for n in (_norm(v) for v in values or ()) if n]


def _contains_either(a: str, b: str) -> bool:
    return a in b or b in a


def _normalize_geo(value: str) -> str:
    text = _norm(value)
    for pattern, replacement in _GEO_ALIASES:
        text = pattern.sub(replacement, text)
    return text


def _stage_index(stage: str) -> int:
    return next((i for i, rung in enumerate(STAGE_LADDER) if rung in stage), -1)


def parse_capital_amount(amount: str | None) -> float | None:
    """Parse amounts like ``"$5M"``, ``"5 million"``, ``"500k"`` or ``"250,000"``.

    Returns ``None`` when no leading number can be found.
    """
    if not amount:
        return None
    normalized = re.sub(r"[\s,]+", "", amount.lower())
    m = _CAPITAL_RE.match(normalized)
    if not m:
        return None
    value = float(m.group(1))
    unit = m.group(2) or ""
    if unit in ("m", "million"):
        return value * 1_000_000
    if unit in ("k", "thousand"):
        return value * 1_000
    return value


# ---------------------------------------------------------------------------
# Factor scoring
# ---------------------------------------------------------------------------


def score_sector(investor_sectors: tuple[str, ...] | list[str] | None, company_sector: str | None) -> float:
    sectors = _norm_all(investor_sectors)
    sector = _norm(company_sector)
    if not sectors or not sector:
        return 50
    if sector in sectors:
        return 100
    if any(_contains_either(s, sector) for s in sectors):
        return 75
    return 20


def score_stage(investor_stages: tuple[str, ...] | list[str] | None, company_stage: str | None) -> float:
    stages = _norm_all(investor_stages)
    stage = _norm(company_stage)
    if not stages or not stage:
        return 60
    if stage in stages:
        return 100

    company_idx = _stage_index(stage)
    if company_idx == -1:
        return 50

    distances = [abs(idx - company_idx) for idx in map(_stage_index, stages) if idx != -1]
    if not distances:
        return 30
    closest = min(distances)
    if closest <= 1:
        return 90
    if closest <= 2:
        return 60
    return 30


def score_ticket_size(
    check_size_min: float | None, check_size_max: float | None, capital_sought: str | None,
) -> float:
    if not _norm(capital_sought):
        return 60
    ask = parse_capital_amount(capital_sought)
    if ask is None:
        return 50
    if check_size_min is None and check_size_max is None:
        return 60

    low = check_size_min or 0.0
    high = check_size_max if check_size_max is not None else math.inf
    if low <= ask <= high:
        return 100
    if ask < low:
        return _clamp(100 * ask / low, 30)
    return _clamp(100 * high / ask, 30) if ask > 0 else 30


def score_geography(investor_geographies: tuple[str, ...] | list[str] | None, hq_location: str | None) -> float:
    geographies = [_normalize_geo(g) for g in _norm_all(investor_geographies)]
    location = _normalize_geo(hq_location or "")
    if not geographies or not location:
        return 70
    if any(_contains_either(g, location) for g in geographies):
        return 100
    return 50


def score_investor_type(preferred_types: tuple[str, ...] | list[str] | None, firm: str | None) -> float:
    types = _norm_all(preferred_types)
    firm_name = _norm(firm)
    if not types or not firm_name:
        return 70
    if any(_contains_either(t, firm_name) for t in types):
        return 100
    return 60


def assess_confidence(investor: InvestorSnapshot, company: CompanySnapshot) -> str:
    """Grade data completeness over the seven tracked profile fields."""
    present = sum((
        bool(_norm_all(investor.sectors)),
        bool(_norm_all(investor.stages)),
        bool(investor.check_size_min and investor.check_size_max),
        bool(_norm_all(investor.geographies)),
        bool(_norm(company.sector)),
        bool(_norm(company.stage)),
        bool(_norm(company.capital_sought)),
    ))
    completeness = present / _CONFIDENCE_FIELDS
    if completeness >= 0.75:
        return "high"
    if completeness >= 0.5:
        return "medium"
    return "low"


def score_pair(investor: InvestorSnapshot, company: CompanySnapshot) -> MatchScore:
    """Compute a fresh MatchScore without touching any cache."""
    factors = {
        "sector": _clamp(score_sector(investor.sectors, company.sector)),
        "stage": _clamp(score_stage(investor.stages, company.stage)),
        "ticket_size": _clamp(score_ticket_size(
            investor.check_size_min, investor.check_size_max, company.capital_sought,
        )),
        "geography": _clamp(score_geography(investor.geographies, company.hq_location)),
        "investor_type": _clamp(score_investor_type(company.preferred_investor_types, investor.firm)),
    }
    overall = sum(factors[name] * weight for name, weight in SCORING_WEIGHTS.items())
    return MatchScore(
        overall=int(_clamp(_round_half_up(overall))),
        sector=_round_half_up(factors["sector"]),
        stage=_round_half_up(factors["stage"]),
        ticket_size=_round_half_up(factors["ticket_size"]),
        geography=_round_half_up(factors["geography"]),
        investor_type=_round_half_up(factors["investor_type"]),
        confidence=assess_confidence(investor, company),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _created_sort_key(created_at: datetime | None) -> float:
    return as_utc(created_at).timestamp() if created_at else -math.inf


class MatchEngine:
    """Scores investor/company pairs, memoizing results in the injected cache."""

    def __init__(self, cache: ScoreCache[MatchScore] | None = None):
        self.cache: ScoreCache[MatchScore] = cache if cache is not None else ScoreCache()

    def calculate_match(self, investor: InvestorSnapshot, company: CompanySnapshot) -> MatchScore:
        cached = self.cache.get(investor.user_id, company.user_id)
        if cached is not None:
            return cached
        score = score_pair(investor, company)
        self.cache.set(investor.user_id, company.user_id, score)
        return score

    def batch_calculate_matches(
        self, investor: InvestorSnapshot, companies: list[CompanySnapshot],
    ) -> list[RankedCompany]:
        """Score every company, best first; ties go to the newest company."""
        ranked = [RankedCompany(c, self.calculate_match(investor, c)) for c in companies]
        ranked.sort(
            key=lambda r: (r.score.overall, _created_sort_key(r.company.created_at)),
            reverse=True,
        )
        return ranked

    def invalidate(self, user_id: Any) -> int:
        """Forget cached scores involving *user_id* (call after a profile edit)."""
        dropped = self.cache.invalidate(user_id)
        if dropped:
            log.debug("Invalidated %d cached match scores for user %s", dropped, user_id)
        return dropped

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict[str, float]:
        return {"size": len(self.cache), "ttl_seconds": self.cache.ttl_seconds}
