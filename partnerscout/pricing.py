"""Dynamic project pricing and ROI estimation.

Pure functions: the same inputs always produce the same breakdown, and
``PricingBreakdown.replay()`` reproduces the unrounded price from the
subtotal and the ordered adjustments.
"""
from __future__ import annotations

import math
import re
from typing import Any, Sequence

from partnerscout.domain import CandidateEntity, PricingAdjustment, PricingBreakdown

TIER_RATES: dict[str, tuple[float, float]] = {
    # tier: (rate per student hour, materials)
    "Advanced": (20.0, 300.0),
    "Intermediate": (15.0, 150.0),
}

# (minimum open positions, multiplier); first match wins
HIRING_BANDS: tuple[tuple[int, float], ...] = ((5, 1.25), (2, 1.15), (1, 1.05))

FUNDING_STAGE_MULTIPLIERS: dict[str, float] = {
    "Seed": 0.95,
    "Series A": 1.10,
    "Series B": 1.25,
    "Series C": 1.30,
    "Series C+": 1.35,
    "Series D+": 1.40,
    "IPO": 1.50,
    "Public": 1.50,
    "Private Equity": 1.40,
}

# (minimum total funding in USD, multiplier)
FUNDING_AMOUNT_BANDS: tuple[tuple[float, float], ...] = (
    (50_000_000, 1.35),
    (10_000_000, 1.20),
    (1_000_000, 1.10),
)

ADVANCED_TECHNOLOGIES = (
    "AI", "ML", "Machine Learning", "Artificial Intelligence",
    "Cloud", "AWS", "Azure", "GCP", "Kubernetes", "Docker",
    "React", "Python", "TensorFlow", "PyTorch",
    "Blockchain", "Cryptocurrency", "IoT", "Edge Computing",
    "Data Science", "Big Data", "Analytics",
)

STRATEGIC_KEYWORDS = (
    "strategic", "optimization", "transformation", "innovation",
    "scale", "growth", "expansion", "market entry", "competitive advantage",
    "digital transformation", "modernization", "efficiency",
)

SMALL_SIZES = ("small", "nonprofit", "non-profit", "startup")
ENTERPRISE_SIZES = ("enterprise", "large")

# (minimum headcount, multiplier, rationale); 26-100 employees is neutral
HEADCOUNT_BANDS: tuple[tuple[int, float, str], ...] = (
    (5001, 1.30, "Enterprise scale organization"),
    (501, 1.20, "Large organization"),
    (101, 1.10, "Mid-size organization"),
    (26, 1.0, "Small to medium organization"),
    (1, 0.90, "Small organization discount"),
)

DELIVERABLE_VALUES: dict[str, int] = {
    "Market Research Report": 8000,
    "Competitive Analysis": 7000,
    "Financial Model": 12000,
    "Prototype": 25000,
    "MVP": 30000,
    "Dashboard": 15000,
    "Analytics Platform": 20000,
    "Strategy Framework": 10000,
    "Process Optimization": 18000,
    "Business Plan": 9000,
    "Marketing Strategy": 11000,
    "Data Analysis": 6000,
    "Feasibility Study": 8500,
    "Technical Documentation": 5000,
    "User Research": 7500,
    "AI Model": 35000,
    "Data Pipeline": 22000,
    "Integration": 12000,
}


def _round_to_unit(value: float, unit: int) -> int:
    """Half-up rounding to a multiple of *unit* (``round`` would use banker's rounding)."""
    if unit <= 0:
        return int(math.floor(value + 0.5))
    return int(math.floor(value / unit + 0.5)) * unit


def _advanced_tech_matches(technologies: Sequence[str]) -> list[str]:
    lowered = [a.lower() for a in ADVANCED_TECHNOLOGIES]
    return [t for t in technologies if any(a in t.lower() for a in lowered)]


# ---------------------------------------------------------------------------
# Adjustments, applied in this order
# ---------------------------------------------------------------------------


def _hiring_adjustment(candidate: CandidateEntity) -> PricingAdjustment | None:
    n = candidate.open_positions
    for minimum, mult in HIRING_BANDS:
        if n >= minimum:
            return PricingAdjustment(
                "Active Hiring", mult,
                f"{n} open position{'s' if n != 1 else ''} signal demand for talent",
            )
    return None


def _funding_adjustment(candidate: CandidateEntity) -> PricingAdjustment | None:
    total = candidate.total_funding_usd
    if total and total > 0:
        for minimum, mult in FUNDING_AMOUNT_BANDS:
            if total >= minimum:
                return PricingAdjustment(
                    "Funding & Capital", mult, f"${total / 1_000_000:.1f}M raised",
                )
        return None
    stage = (candidate.funding_stage or "").strip()
    mult = FUNDING_STAGE_MULTIPLIERS.get(stage)
    if mult is None or mult == 1.0:
        return None
    return PricingAdjustment("Funding & Capital", mult, f"{stage} funding stage")


def _technology_adjustment(candidate: CandidateEntity) -> PricingAdjustment | None:
    matches = _advanced_tech_matches(candidate.technologies)
    if len(matches) >= 3:
        return PricingAdjustment(
            "Advanced Technology Stack", 1.25,
            f"{len(matches)} advanced technologies in use ({', '.join(matches[:5])})",
        )
    if matches:
        return PricingAdjustment("Modern Technology Stack", 1.10, f"Uses {', '.join(matches)}")
    return None


def _strategic_adjustment(candidate: CandidateEntity) -> PricingAdjustment | None:
    for need in candidate.inferred_needs:
        text = need.lower()
        if any(kw in text for kw in STRATEGIC_KEYWORDS):
            return PricingAdjustment("Strategic Initiative", 1.15, f"Addresses strategic need: {need}")
    return None


def _headcount(employee_count: str | None) -> int | None:
    """Lower bound of a headcount such as ``"201-500"``, ``"10,000+"`` or ``"350"``."""
    m = re.search(r"\d[\d,]*", employee_count or "")
    if m is None:
        return None
    return int(m.group().replace(",", "")) or None


def _size_adjustment(candidate: CandidateEntity) -> PricingAdjustment | None:
    headcount = _headcount(candidate.employee_count)
    if headcount is not None:
        for minimum, mult, reason in HEADCOUNT_BANDS:
            if headcount >= minimum:
                if mult == 1.0:
                    return None
                return PricingAdjustment(
                    "Organization Scale", mult, f"{reason} ({candidate.employee_count} employees)",
                )
    size = (candidate.size or "").lower()
    if any(s in size for s in SMALL_SIZES):
        return PricingAdjustment("Organization Scale", 0.85, "Small or nonprofit organization discount")
    if any(s in size for s in ENTERPRISE_SIZES):
        return PricingAdjustment("Organization Scale", 1.10, "Enterprise-scale organization")
    return None


_ADJUSTMENTS = (
    _hiring_adjustment,
    _funding_adjustment,
    _technology_adjustment,
    _strategic_adjustment,
    _size_adjustment,
)


def estimate_price(
    weeks: int,
    hours_per_week: int,
    team_size: int,
    tier: str,
    candidate: CandidateEntity,
    rounding_unit: int = 100,
) -> PricingBreakdown:
    """Base labour+materials cost with stacked market multipliers.

    ``final_price == round_to_unit(subtotal * prod(multipliers))``.
    """
    rate, materials = TIER_RATES.get(tier, TIER_RATES["Intermediate"])
    if tier not in TIER_RATES:
        tier = "Intermediate"
    subtotal = weeks * hours_per_week * team_size * rate + materials

    adjustments = tuple(a for a in (fn(candidate) for fn in _ADJUSTMENTS) if a is not None)
    value = subtotal
    for adj in adjustments:
        value *= adj.multiplier

    return PricingBreakdown(
        weeks=weeks,
        hours_per_week=hours_per_week,
        team_size=team_size,
        tier=tier,
        rate_per_hour=rate,
        materials=materials,
        subtotal=subtotal,
        adjustments=adjustments,
        final_price=_round_to_unit(value, rounding_unit),
        rounding_unit=rounding_unit,
    )


# ---------------------------------------------------------------------------
# ROI
# ---------------------------------------------------------------------------


def estimate_roi(price: int, deliverables: Sequence[str], candidate: CandidateEntity) -> dict[str, Any]:
    """Estimate the value a partner gets for *price*, by component."""
    components: list[dict[str, Any]] = []
    total = float(price)

    matched: list[dict[str, Any]] = []
    for deliverable in deliverables:
        lowered = deliverable.lower()
        for name, value in DELIVERABLE_VALUES.items():
            if name.lower() in lowered:
                matched.append({"deliverable": deliverable, "market_value": value, "matched": name})
    deliverable_value = sum(m["market_value"] for m in matched)
    if deliverable_value:
        total += deliverable_value
        components.append({"category": "Professional Deliverables", "value": deliverable_value, "breakdown": matched})

    if candidate.open_positions:
        hires = min(3, candidate.open_positions)
        recruiting = hires * 8000 * 0.60
        screening = hires * 2000
        total += recruiting + screening
        components.append({
            "category": "Talent Pipeline Access",
            "value": recruiting + screening,
            "breakdown": {
                "open_positions": candidate.open_positions,
                "qualified_candidates": hires,
                "recruiting_cost_savings": recruiting,
                "interview_time_savings": screening,
            },
        })

    strategic = _strategic_consulting_value(price, candidate)
    if strategic:
        total += strategic
        components.append({"category": "Strategic Innovation Consulting", "value": strategic})

    if candidate.technologies:
        transfer = price * 0.25
        label = "Academic Research & Technology Transfer"
    else:
        transfer = price * 0.15
        label = "Knowledge Transfer"
    total += transfer
    components.append({"category": label, "value": transfer})

    risk = price * 0.10
    total += risk
    components.append({"category": "Risk-Free Pilot Program", "value": risk})

    return {
        "project_cost": price,
        "total_value": round(total),
        "roi_multiplier": round(total / price, 2) if price else None,
        "net_value": round(total - price),
        "value_components": components,
    }


def _strategic_consulting_value(price: int, candidate: CandidateEntity) -> float:
    total = candidate.total_funding_usd
    if total and total > 0:
        if total >= 50_000_000:
            return price * 0.40
        if total >= 10_000_000:
            return price * 0.30
        if total >= 1_000_000:
            return price * 0.20
        return 0.0
    if candidate.funding_stage in ("Series B", "Series C", "Series C+", "Series D+", "IPO", "Public"):
        return price * 0.25
    return 0.0
