"""Atomic three-table write of one generated project.

The parent ``projects`` row, its ``project_forms`` row and its
``project_metadata`` row are written in a single transaction: all three
rows exist afterwards, or none do.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy.orm import Session, sessionmaker

from partnerscout.domain import CandidateEntity, Course, PricingBreakdown, Proposal, Score
from partnerscout.models import Project, ProjectForms, ProjectMetadata

log = logging.getLogger(__name__)


@dataclass
class PersistResult:
    persisted: bool
    project_id: int | None = None
    reason: str | None = None


@dataclass
class ProjectBundle:
    """Everything computed for one candidate that ends up in the store."""
    course: Course
    candidate: CandidateEntity
    proposal: Proposal
    score: Score
    pricing: PricingBreakdown
    alignment_detail: dict[str, Any] | None = None
    market_alignment: int = 0
    roi: dict[str, Any] = field(default_factory=dict)
    needs_review: bool = False
    attempts: int = 1
    issues: Sequence[str] = ()
    generation_run_id: int | None = None
    companies_considered: Sequence[dict[str, Any]] = ()
    selection_criteria: dict[str, Any] = field(default_factory=dict)
    algorithm_version: str = ""
    ai_model_version: str = ""


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------


def build_milestones(weeks: int, deliverables: Sequence[str]) -> list[dict[str, Any]]:
    """One milestone per deliverable, evenly spaced across the course."""
    if not deliverables:
        return []
    interval = max(1, weeks // len(deliverables))
    return [
        {
            "week": min(weeks, (i + 1) * interval) if weeks else (i + 1) * interval,
            "deliverable": d,
            "description": f"Complete and submit {d}",
        }
        for i, d in enumerate(deliverables)
    ]


def build_forms(bundle: ProjectBundle) -> dict[str, dict[str, Any]]:
    c, p, course = bundle.candidate, bundle.proposal, bundle.course
    return {
        "form1": {
            "title": p.title,
            "industry": c.sector,
            "description": p.description,
            "budget": bundle.pricing.final_price,
        },
        "form2": {
            "company": c.name,
            "contact_name": p.contact.name,
            "contact_title": p.contact.title,
            "contact_email": p.contact.email,
            "contact_phone": p.contact.phone,
            "website": p.website or c.website,
            "description": p.company_description or c.description,
            "size": c.size,
            "sector": c.sector,
            "preferred_communication": "Email" if p.contact.email else "",
        },
        "form3": {
            "skills": list(p.skills),
            "team_size": bundle.pricing.team_size,
            "learning_objectives": p.lo_alignment,
            "deliverables": list(p.deliverables),
        },
        "form4": {
            "weeks": course.weeks,
            "start": None,
            "end": None,
        },
        "form5": {
            "type": "Consulting",
            "location": course.location,
            "equipment": p.equipment or "Standard university computer lab equipment",
            "ip": "Shared",
            "follow_up": "Potential internship opportunities",
        },
        "form6": {
            "year": course.level,
            "hours_per_week": course.hours_per_week,
            "difficulty": p.tier,
            "majors": list(p.majors),
            "faculty_expertise": p.faculty_expertise,
            "publication": p.publication_opportunity or "No",
        },
    }


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class PersistenceCoordinator:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._factory = session_factory

    def persist(self, bundle: ProjectBundle) -> PersistResult:
        """Write project, forms and metadata as one transaction.

        Never raises: a failed write rolls back completely and is reported
        as ``PersistResult(persisted=False, reason=...)``.
        """
        try:
            with self._factory.begin() as session:
                project = self._insert_project(session, bundle)
                session.flush()
                self._insert_forms(session, project.id, bundle)
                self._insert_metadata(session, project.id, bundle)
                project_id = project.id
        except Exception as exc:
            log.exception("Persisting project for %s failed; transaction rolled back", bundle.candidate.name)
            return PersistResult(False, reason=f"{type(exc).__name__}: {exc}")
        log.info("Persisted project %d for %s", project_id, bundle.candidate.name)
        return PersistResult(True, project_id=project_id)

    @staticmethod
    def _insert_project(session: Session, bundle: ProjectBundle) -> Project:
        p, c, s = bundle.proposal, bundle.candidate, bundle.score
        project = Project(
            course_id=bundle.course.id,
            generation_run_id=bundle.generation_run_id,
            company_profile_id=c.profile_id,
            company_name=c.name,
            sector=c.sector,
            title=p.title,
            description=p.description,
            tasks_json=json.dumps(list(p.tasks)),
            deliverables_json=json.dumps(list(p.deliverables)),
            skills_json=json.dumps(list(p.skills)),
            tier=p.tier,
            lo_alignment=p.lo_alignment,
            duration_weeks=bundle.course.weeks,
            team_size=bundle.pricing.team_size,
            pricing_usd=bundle.pricing.final_price,
            lo_score=s.alignment,
            feasibility_score=s.feasibility,
            mutual_benefit_score=s.mutual_benefit,
            final_score=s.final,
            needs_review=bundle.needs_review,
        )
        session.add(project)
        return project

    @staticmethod
    def _insert_forms(session: Session, project_id: int, bundle: ProjectBundle) -> None:
        forms = build_forms(bundle)
        session.add(ProjectForms(
            project_id=project_id,
            form1_json=json.dumps(forms["form1"]),
            form2_json=json.dumps(forms["form2"]),
            form3_json=json.dumps(forms["form3"]),
            form4_json=json.dumps(forms["form4"]),
            form5_json=json.dumps(forms["form5"]),
            form6_json=json.dumps(forms["form6"]),
            milestones_json=json.dumps(build_milestones(bundle.course.weeks, bundle.proposal.deliverables)),
        ))

    @staticmethod
    def _insert_metadata(session: Session, project_id: int, bundle: ProjectBundle) -> None:
        c = bundle.candidate
        rationale = {
            **bundle.score.as_dict(),
            "source": c.source,
            "relevance": c.relevance,
            "relevance_reason": c.relevance_reason,
            "data_completeness": c.data_completeness,
        }
        session.add(ProjectMetadata(
            project_id=project_id,
            market_alignment_score=bundle.market_alignment,
            estimated_roi_json=json.dumps(bundle.roi),
            pricing_breakdown_json=json.dumps(bundle.pricing.as_dict()),
            lo_alignment_detail_json=json.dumps(bundle.alignment_detail) if bundle.alignment_detail else None,
            scoring_rationale_json=json.dumps(rationale),
            companies_considered_json=json.dumps(list(bundle.companies_considered)),
            selection_criteria_json=json.dumps(bundle.selection_criteria),
            algorithm_version=bundle.algorithm_version,
            ai_model_version=bundle.ai_model_version,
            generation_attempts=bundle.attempts,
            quality_issues_json=json.dumps(list(bundle.issues)),
        ))
