"""Proposal scoring: learning-outcome alignment, feasibility, mutual benefit
and market alignment.

Only ``alignment_score`` talks to the generative service, and it never
raises: any failure yields the configured fallback value.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Sequence

from partnerscout.config import ScoreWeights
from partnerscout.domain import CandidateEntity, Course, Proposal, Score, ScoreResult
from partnerscout.errors import PipelineError

log = logging.getLogger(__name__)

ALIGNMENT_SYSTEM = """\
You are an academic curriculum reviewer. Given a project's tasks and
deliverables and a course's learning outcomes, estimate what percentage of
the outcomes are meaningfully practised by the project.

Respond with ONLY valid JSON: {"coverage_percentage": <0-100>, "outcomes_covered": ["LO1", ...], "gaps": ["..."]}
"""

_WORD_RE = re.compile(r"[a-z0-9+#]+")

_STOPWORDS = frozenset({"about", "using", "their", "these", "which", "where"})

SYNONYMS: dict[str, tuple[str, ...]] = {
    "ai": ("artificial intelligence", "machine learning", "ml", "deep learning", "neural network"),
    "ml": ("machine learning", "ai", "artificial intelligence", "predictive", "model"),
    "cloud": ("aws", "azure", "gcp", "kubernetes", "docker", "serverless"),
    "data": ("analytics", "database", "sql", "big data", "data science", "etl"),
    "software": ("development", "engineering", "programming", "coding", "application"),
    "fluid": ("cfd", "hydraulics", "flow", "aerodynamics"),
    "mechanical": ("cad", "solidworks", "ansys", "manufacturing", "design"),
    "chemical": ("process", "reaction", "chemistry", "materials"),
    "simulation": ("modeling", "cfd", "fea", "ansys", "matlab"),
    "optimization": ("efficiency", "improvement", "performance", "lean"),
}


# ---------------------------------------------------------------------------
# Component scores
# ---------------------------------------------------------------------------


async def alignment_score(
    client: Any,
    tasks: Sequence[str],
    deliverables: Sequence[str],
    outcomes: Sequence[str],
    lo_alignment: str = "",
    fallback: float = 0.7,
) -> ScoreResult:
    """Ask the generative service for outcome coverage, mapped to 0..1."""
    if client is None:
        return ScoreResult(fallback, degraded=True, reason="no generative client configured")
    if not outcomes:
        return ScoreResult(fallback, degraded=True, reason="course has no learning outcomes")

    user = "\n".join([
        "LEARNING OUTCOMES:",
        *(f"{i + 1}. {o}" for i, o in enumerate(outcomes)),
        "",
        "TASKS:",
        *(f"- {t}" for t in tasks),
        "",
        "DELIVERABLES:",
        *(f"- {d}" for d in deliverables),
        "",
        f"STATED ALIGNMENT: {lo_alignment}" if lo_alignment else "",
    ])
    try:
        data = await client.call(ALIGNMENT_SYSTEM, user)
    except PipelineError as exc:
        log.warning("Alignment scoring degraded to %.2f: %s", fallback, exc)
        return ScoreResult(fallback, degraded=True, reason=exc.code)
    except Exception as exc:
        log.warning("Alignment scoring degraded to %.2f (%s): %s", fallback, type(exc).__name__, exc)
        return ScoreResult(fallback, degraded=True, reason="unexpected error")

    coverage = data.get("coverage_percentage") if isinstance(data, dict) else None
    if isinstance(coverage, bool) or not isinstance(coverage, (int, float)) or not 0 <= coverage <= 100:
        log.warning("Alignment reply has no usable coverage (%r); using fallback", coverage)
        return ScoreResult(fallback, degraded=True, reason="malformed coverage")
    return ScoreResult(float(coverage) / 100.0)


def feasibility_score(weeks: int, threshold: int = 12, long: float = 0.85, short: float = 0.65) -> float:
    return long if weeks >= threshold else short


def mutual_benefit_score(value: float = 0.80) -> float:
    return value


def final_score(
    alignment: float, feasibility: float, mutual_benefit: float, weights: ScoreWeights | None = None,
) -> float:
    w = weights or ScoreWeights()
    total = w.alignment * alignment + w.feasibility * feasibility + w.mutual_benefit * mutual_benefit
    return round(min(1.0, max(0.0, total)), 2)


async def score_proposal(client: Any, proposal: Proposal, course: Course, settings: Any) -> Score:
    """Compute the full score for one proposal using *settings* for constants."""
    aligned = await alignment_score(
        client,
        proposal.tasks,
        proposal.deliverables,
        course.outcomes,
        proposal.lo_alignment,
        fallback=settings.alignment_fallback,
    )
    lo = round(aligned.value, 2)
    feas = feasibility_score(
        course.weeks,
        threshold=settings.feasibility_threshold_weeks,
        long=settings.feasibility_long,
        short=settings.feasibility_short,
    )
    mb = mutual_benefit_score(settings.mutual_benefit)
    return Score(
        alignment=lo,
        feasibility=feas,
        mutual_benefit=mb,
        final=final_score(lo, feas, mb, settings.weights),
        alignment_degraded=aligned.degraded,
    )


# ---------------------------------------------------------------------------
# Market alignment (deterministic)
# ---------------------------------------------------------------------------


def _words(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def course_keywords(course: Course) -> list[str]:
    """Topic words longer than 3 chars plus outcome words longer than 4 chars."""
    seen: dict[str, None] = {}
    for topic in course.topics:
        for w in _words(topic):
            if len(w) > 3:
                seen.setdefault(w, None)
    for outcome in course.outcomes:
        for w in _words(outcome):
            if len(w) > 4 and w not in _STOPWORDS:
                seen.setdefault(w, None)
    return list(seen)


def expand_keywords(keywords: Iterable[str]) -> list[str]:
    """Add synonyms for any keyword that has an entry in ``SYNONYMS``."""
    out: dict[str, None] = {}
    for kw in keywords:
        kw = kw.lower()
        out.setdefault(kw, None)
        for syn in SYNONYMS.get(kw, ()):
            out.setdefault(syn, None)
    return list(out)


def market_alignment_score(
    tasks: Sequence[str],
    needs: Sequence[str],
    job_postings: Sequence[dict[str, Any]],
    technologies: Sequence[str],
    keywords: Sequence[str],
) -> int:
    """0-100: needs coverage (<=40) + job signal overlap (<=30) + tech overlap (<=30)."""
    expanded = expand_keywords(keywords)
    task_text = " ".join(tasks).lower()

    needs_part = 0.0
    if needs:
        matched = sum(
            1 for need in needs
            if any(w in task_text for w in _words(need) if len(w) > 3)
        )
        needs_part = matched / len(needs) * 40

    jobs_part = 0.0
    if job_postings and expanded:
        hits = 0
        for job in job_postings:
            text = f"{job.get('title', '')} {job.get('description', '')}".lower()
            if any(kw in text for kw in expanded):
                hits += 1
        jobs_part = hits / len(job_postings) * 30

    tech_part = 0.0
    if technologies and expanded:
        hits = 0
        for tech in technologies:
            t = tech.lower()
            if any(kw in t or t in kw for kw in expanded):
                hits += 1
        tech_part = hits / len(technologies) * 30

    return round(needs_part + jobs_part + tech_part)


def market_alignment_for(proposal: Proposal, candidate: CandidateEntity, course: Course) -> int:
    return market_alignment_score(
        proposal.tasks,
        candidate.inferred_needs,
        candidate.job_postings,
        candidate.technologies,
        course_keywords(course),
    )
