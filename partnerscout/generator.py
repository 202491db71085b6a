"""Proposal generation with deterministic cleanup, validation and bounded retries."""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any

from partnerscout.domain import CandidateEntity, Course, Proposal
from partnerscout.errors import GenerationExhausted, PipelineError, backoff_delay
from partnerscout.sourcing import is_generic_need

log = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PLACEHOLDER_MARKERS = ("ai-generated", "tbd", "placeholder", "lorem ipsum")
GENERIC_SKILLS = ("research", "analysis", "presentation", "communication", "teamwork", "writing")

MIN_DESCRIPTION_WORDS = 50
MIN_SKILLS = 3
MIN_TASKS = 4
MIN_DELIVERABLES = 3
MIN_PHONE_DIGITS = 10
MAX_TASK_WORDS = 20

_BOLD_RE = re.compile(r"\*\*|\*")
_BULLET_RE = re.compile(r"^\s*-\s+")
_NUMBER_RE = re.compile(r"^\s*\d+\.\s*")
_WEEK_PAREN_RE = re.compile(r"\(\s*weeks?\s*\d+(?:\s*[-–]\s*\d+)?\s*\)", re.IGNORECASE)
_WEEK_PREFIX_RE = re.compile(r"weeks?\s*\d+(?:\s*[-–]\s*\d+)?\s*:", re.IGNORECASE)
_SPACES_RE = re.compile(r"\s{2,}")

PROPOSAL_SYSTEM = """\
You design experiential-learning projects that pair a university course with
a real partner organization. Projects must let students practise the
course's specific learning outcomes on a concrete problem the organization
actually has.

Rules:
- Tasks name a concrete method, tool or data source and a bounded scope.
- Deliverables are named artifacts with a stated format.
- Skills are domain-specific and mirror the tasks; never list soft skills only.
- Do not put week numbers inside tasks or deliverables.

Respond with ONLY valid JSON:
{
  "title": "...",
  "description": "at least 50 words",
  "tasks": ["..."],
  "deliverables": ["..."],
  "skills": ["..."],
  "tier": "Intermediate|Advanced",
  "lo_alignment": "how the tasks practise each outcome",
  "company_needs": ["..."],
  "contact": {"name": "...", "title": "...", "email": "...", "phone": "..."},
  "company_description": "...",
  "website": "...",
  "equipment": "...",
  "majors": ["..."],
  "faculty_expertise": "...",
  "publication_opportunity": "Yes|No"
}
"""


@dataclass(frozen=True)
class GenerationOutcome:
    proposal: Proposal
    attempts: int
    needs_review: bool = False
    issues: tuple[str, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def build_prompt(candidate: CandidateEntity, course: Course) -> str:
    lines = [
        f"COURSE: {course.title}" + (f" ({course.code})" if course.code else ""),
        f"LEVEL: {course.level}",
        f"DURATION: {course.weeks} weeks, {course.hours_per_week} hours/week per student, team of 3",
        "LEARNING OUTCOMES:",
        *(f"{i + 1}. {o}" for i, o in enumerate(course.outcomes)),
    ]
    if course.artifacts:
        lines += ["REQUIRED ARTIFACTS:", *(f"- {a}" for a in course.artifacts)]
    lines += [
        "",
        f"PARTNER: {candidate.name}",
        f"SECTOR: {candidate.sector or 'unknown'}",
        f"SIZE: {candidate.size or 'unknown'}",
    ]
    if candidate.description:
        lines.append(f"ABOUT: {candidate.description}")
    specific = [n for n in candidate.inferred_needs if not is_generic_need(n)]
    if specific:
        lines.append(f"KNOWN NEEDS: {'; '.join(specific)}")
    if candidate.has_market_intelligence:
        lines.append("MARKET INTELLIGENCE:")
        if candidate.job_postings:
            titles = [str(j.get("title", "")) for j in candidate.job_postings[:3]]
            lines.append(f"- Hiring: {candidate.open_positions} open positions ({', '.join(t for t in titles if t)})")
        if candidate.technologies:
            lines.append(f"- Technology stack: {', '.join(candidate.technologies[:10])}")
        if candidate.funding_stage:
            lines.append(f"- Funding stage: {candidate.funding_stage}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Cleanup & validation
# ---------------------------------------------------------------------------


def _clean_task(text: str) -> str:
    text = _BOLD_RE.sub("", text)
    text = _BULLET_RE.sub("", text)
    text = _NUMBER_RE.sub("", text)
    return text.strip()


def _clean_deliverable(text: str) -> str:
    text = _WEEK_PAREN_RE.sub("", text)
    text = _WEEK_PREFIX_RE.sub("", text)
    text = _BOLD_RE.sub("", text)
    return _SPACES_RE.sub(" ", text).strip()


def clean_proposal(proposal: Proposal) -> Proposal:
    """Strip markdown artifacts and embedded timeline references."""
    tasks = tuple(t for t in (_clean_task(t) for t in proposal.tasks) if t)
    deliverables = tuple(d for d in (_clean_deliverable(d) for d in proposal.deliverables) if d)
    return replace(proposal, tasks=tasks, deliverables=deliverables)


def validate_proposal(proposal: Proposal) -> list[str]:
    """Return a list of quality issues; empty means the proposal is acceptable."""
    issues: list[str] = []
    desc = proposal.description.lower()
    if any(m in desc for m in PLACEHOLDER_MARKERS):
        issues.append("Description contains placeholder text")
    if len(proposal.description.split()) < MIN_DESCRIPTION_WORDS:
        issues.append(f"Description is shorter than {MIN_DESCRIPTION_WORDS} words")

    if len(proposal.skills) < MIN_SKILLS:
        issues.append(f"Fewer than {MIN_SKILLS} skills")
    if proposal.skills and all(any(g in s.lower() for g in GENERIC_SKILLS) for s in proposal.skills):
        issues.append("Skills are too generic")

    email = proposal.contact.email
    if not email or not EMAIL_RE.match(email):
        issues.append("Contact email is invalid")
    digits = re.sub(r"\D", "", proposal.contact.phone or "")
    if len(digits) < MIN_PHONE_DIGITS:
        issues.append("Contact phone is too short")

    if len(proposal.tasks) < MIN_TASKS:
        issues.append(f"Fewer than {MIN_TASKS} tasks")
    if len(proposal.deliverables) < MIN_DELIVERABLES:
        issues.append(f"Fewer than {MIN_DELIVERABLES} deliverables")
    long_tasks = sum(1 for t in proposal.tasks if len(t.split()) > MAX_TASK_WORDS)
    if long_tasks:
        issues.append(f"{long_tasks} task(s) longer than {MAX_TASK_WORDS} words")
    return issues


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class ProposalGenerator:
    def __init__(
        self,
        client: Any,
        max_attempts: int = 3,
        backoff_base: float = 3.0,
        backoff_cap: float = 15.0,
        quality_backoff: float = 2.0,
    ):
        self.client = client
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.quality_backoff = quality_backoff

    async def generate(self, candidate: CandidateEntity, course: Course) -> GenerationOutcome:
        """Generate one proposal for *candidate*.

        Transport and service failures back off exponentially; quality issues
        back off linearly. A proposal that still has issues on the last attempt
        is returned with ``needs_review=True``. Raises ``GenerationExhausted``
        when no attempt produced a structurally valid proposal, and re-raises
        permanent errors immediately.
        """
        user = build_prompt(candidate, course)
        last_error: PipelineError | None = None
        flawed: GenerationOutcome | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                raw = await self.client.call(PROPOSAL_SYSTEM, user)
                proposal = Proposal.from_raw(raw, candidate)
            except PipelineError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
                log.warning("Generation attempt %d/%d for %s failed (%s): %s",
                            attempt, self.max_attempts, candidate.name, exc.code, exc)
                if attempt < self.max_attempts:
                    await asyncio.sleep(backoff_delay(exc, attempt, self.backoff_base, self.backoff_cap))
                continue

            proposal = clean_proposal(proposal)
            issues = validate_proposal(proposal)
            if not issues:
                return GenerationOutcome(proposal, attempt)
            if attempt == self.max_attempts:
                log.warning("Keeping proposal for %s with %d unresolved issue(s) for review",
                            candidate.name, len(issues))
                return GenerationOutcome(proposal, attempt, needs_review=True, issues=tuple(issues))
            flawed = GenerationOutcome(proposal, attempt, needs_review=True, issues=tuple(issues))
            log.info("Proposal for %s has quality issues (%s); retrying", candidate.name, "; ".join(issues))
            await asyncio.sleep(self.quality_backoff * attempt)

        if flawed is not None:
            log.warning("Falling back to flawed proposal from attempt %d for %s", flawed.attempts, candidate.name)
            return flawed
        raise GenerationExhausted(candidate.name, self.max_attempts, last_error)
