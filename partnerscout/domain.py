"""In-memory value types that flow through one generation run.

None of these are mutated once built: cleanup and scoring produce new
instances via ``dataclasses.replace``.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

from partnerscout.errors import LLMCallError
from partnerscout.utils import str_list

TIERS = ("Intermediate", "Advanced")


@dataclass(frozen=True)
class Course:
    id: int
    owner_id: str
    title: str
    level: str
    outcomes: tuple[str, ...]
    artifacts: tuple[str, ...]
    weeks: int
    hours_per_week: int
    location: str
    code: str = ""
    topics: tuple[str, ...] = ()

    def signature(self) -> str:
        """Stable digest of the parts of a course that affect relevance ranking."""
        payload = json.dumps(
            {"outcomes": sorted(o.strip().lower() for o in self.outcomes), "level": self.level.strip().lower()},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CandidateEntity:
    name: str
    sector: str = ""
    size: str = ""
    description: str = ""
    website: str = ""
    inferred_needs: tuple[str, ...] = ()
    job_postings: tuple[dict[str, Any], ...] = ()
    technologies: tuple[str, ...] = ()
    funding_stage: str | None = None
    total_funding_usd: float | None = None
    employee_count: str | None = None
    city: str = ""
    zip: str = ""
    contact_name: str | None = None
    contact_title: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    data_completeness: int = 0
    profile_id: int | None = None
    source: str = "local_store"  # enrichment_batch | discovery | local_store | generated
    relevance: float | None = None
    relevance_reason: str = ""

    @property
    def key(self) -> str:
        """Identity used for cache keys and de-duplication."""
        if self.profile_id is not None:
            return f"id:{self.profile_id}"
        return f"name:{self.name.strip().casefold()}"

    @property
    def open_positions(self) -> int:
        return len(self.job_postings)

    @property
    def has_market_intelligence(self) -> bool:
        return bool(self.job_postings or self.technologies or self.funding_stage)

    @property
    def is_real(self) -> bool:
        return self.source != "generated"


@dataclass(frozen=True)
class Contact:
    name: str = ""
    title: str = ""
    email: str = ""
    phone: str = ""


@dataclass(frozen=True)
class Proposal:
    title: str
    description: str
    tasks: tuple[str, ...]
    deliverables: tuple[str, ...]
    skills: tuple[str, ...] = ()
    tier: str = "Intermediate"
    lo_alignment: str = ""
    company_needs: tuple[str, ...] = ()
    contact: Contact = field(default_factory=Contact)
    company_description: str = ""
    website: str = ""
    equipment: str = ""
    majors: tuple[str, ...] = ()
    faculty_expertise: str = ""
    publication_opportunity: str = "No"

    @classmethod
    def from_raw(cls, raw: Any, candidate: CandidateEntity) -> Proposal:
        """Build a proposal from the generative service's JSON.

        Raises ``LLMCallError`` when the reply does not have the required shape.
        Real contact details on the candidate take precedence over generated ones.
        """
        if not isinstance(raw, dict):
            raise LLMCallError(f"Proposal reply is {type(raw).__name__}, expected object")
        title = str(raw.get("title") or "").strip()
        description = str(raw.get("description") or "").strip()
        tasks = str_list(raw.get("tasks"))
        deliverables = str_list(raw.get("deliverables"))
        if not title or not description or not tasks or not deliverables:
            raise LLMCallError("Proposal reply is missing title, description, tasks or deliverables")

        contact_raw = raw.get("contact") if isinstance(raw.get("contact"), dict) else {}
        contact = Contact(
            name=candidate.contact_name or str(contact_raw.get("name") or "").strip(),
            title=candidate.contact_title or str(contact_raw.get("title") or "").strip(),
            email=candidate.contact_email or str(contact_raw.get("email") or "").strip(),
            phone=candidate.contact_phone or str(contact_raw.get("phone") or "").strip(),
        )

        tier = str(raw.get("tier") or "").strip().title()
        if tier not in TIERS:
            tier = "Advanced" if "advanced" in tier.lower() else "Intermediate"

        return cls(
            title=title,
            description=description,
            tasks=tuple(tasks),
            deliverables=tuple(deliverables),
            skills=tuple(str_list(raw.get("skills"))),
            tier=tier,
            lo_alignment=str(raw.get("lo_alignment") or "").strip(),
            company_needs=tuple(str_list(raw.get("company_needs"))),
            contact=contact,
            company_description=str(raw.get("company_description") or "").strip(),
            website=str(raw.get("website") or candidate.website or "").strip(),
            equipment=str(raw.get("equipment") or "").strip(),
            majors=tuple(str_list(raw.get("majors"))),
            faculty_expertise=str(raw.get("faculty_expertise") or "").strip(),
            publication_opportunity=str(raw.get("publication_opportunity") or "No").strip(),
        )


@dataclass(frozen=True)
class ScoreResult:
    """A score that may have degraded to a precomputed fallback."""
    value: float
    degraded: bool = False
    reason: str = ""


@dataclass(frozen=True)
class Score:
    alignment: float
    feasibility: float
    mutual_benefit: float
    final: float
    alignment_degraded: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "lo_score": self.alignment,
            "feasibility_score": self.feasibility,
            "mutual_benefit_score": self.mutual_benefit,
            "final_score": self.final,
            "alignment_degraded": self.alignment_degraded,
        }


@dataclass(frozen=True)
class PricingAdjustment:
    factor: str
    multiplier: float
    rationale: str


@dataclass(frozen=True)
class PricingBreakdown:
    weeks: int
    hours_per_week: int
    team_size: int
    tier: str
    rate_per_hour: float
    materials: float
    subtotal: float
    adjustments: tuple[PricingAdjustment, ...]
    final_price: int
    rounding_unit: int = 100

    @property
    def total_hours(self) -> int:
        return self.weeks * self.hours_per_week * self.team_size

    def replay(self) -> float:
        """Apply the adjustments, in order, to the subtotal (unrounded)."""
        value = self.subtotal
        for adj in self.adjustments:
            value *= adj.multiplier
        return value

    def as_dict(self) -> dict[str, Any]:
        return {
            "base_calculation": {
                "weeks": self.weeks,
                "hours_per_week": self.hours_per_week,
                "team_size": self.team_size,
                "total_hours": self.total_hours,
                "tier": self.tier,
                "rate_per_hour": self.rate_per_hour,
                "labor_cost": self.total_hours * self.rate_per_hour,
                "materials": self.materials,
                "subtotal": self.subtotal,
            },
            "adjustments": [
                {"factor": a.factor, "multiplier": a.multiplier, "rationale": a.rationale}
                for a in self.adjustments
            ],
            "rounding_unit": self.rounding_unit,
            "final_price": self.final_price,
        }
