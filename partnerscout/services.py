"""Shared business logic for the PartnerScout API, MCP server and CLI."""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from partnerscout.config import Settings, get_settings
from partnerscout.discovery import DiscoveryClient, organization_to_candidate
from partnerscout.errors import AuthorizationError, InvalidInputError, NotFoundError
from partnerscout.filter_cache import FilterCache
from partnerscout.generator import ProposalGenerator
from partnerscout.llm import LLMClient
from partnerscout.models import CourseProfile, GenerationRun, Project
from partnerscout.orchestrator import CancellationToken, GenerationRunOrchestrator, RunRequest
from partnerscout.persistence import PersistenceCoordinator
from partnerscout.sourcing import (
    CandidateSourcer,
    DiscoveryStage,
    EnrichedBatchStage,
    GenerativeFallbackStage,
    IntelligenceFilter,
    LocalStoreStage,
    upsert_company,
)
from partnerscout.utils import json_parse, str_list

log = logging.getLogger(__name__)

PROJECT_SUMMARY_FIELDS = (
    "id", "course_id", "generation_run_id", "company_profile_id", "company_name",
    "sector", "title", "tier", "duration_weeks", "team_size", "pricing_usd",
    "lo_score", "feasibility_score", "mutual_benefit_score", "final_score", "needs_review",
)

RUN_FIELDS = (
    "id", "course_id", "status", "requested_count", "projects_generated",
    "enrichment_batch_id", "error_message",
)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_orchestrator(
    session_factory: sessionmaker[Session],
    settings: Settings | None = None,
    client: Any = None,
    discovery: DiscoveryClient | None = None,
) -> GenerationRunOrchestrator:
    """Assemble the pipeline with the fixed stage order."""
    s = settings or get_settings()
    if client is None:
        client = LLMClient()
    if discovery is None:
        discovery = DiscoveryClient(
            s.discovery_api_url,
            s.discovery_api_key,
            timeout=s.discovery_timeout_seconds,
            min_interval=s.discovery_min_interval,
            max_attempts=s.discovery_max_attempts,
        )
    cache = FilterCache(session_factory, ttl_days=s.filter_cache_ttl_days)
    sourcer = CandidateSourcer([
        EnrichedBatchStage(session_factory),
        DiscoveryStage(discovery, session_factory, delay=s.inter_call_delay),
        LocalStoreStage(
            session_factory,
            IntelligenceFilter(client, cache, cutoff=s.relevance_cutoff),
            batch_size=s.local_store_batch_size,
        ),
        GenerativeFallbackStage(client),
    ])
    generator = ProposalGenerator(
        client,
        max_attempts=s.max_generation_attempts,
        backoff_base=s.transport_backoff_base,
        backoff_cap=s.transport_backoff_cap,
        quality_backoff=s.quality_backoff_step,
    )
    return GenerationRunOrchestrator(
        session_factory, sourcer, generator, PersistenceCoordinator(session_factory), client, s,
    )


async def generate_projects(
    orchestrator: GenerationRunOrchestrator,
    course_id: int,
    principal_id: str,
    industries: list[str] | None = None,
    candidate_count: int = 3,
    prior_enrichment_batch_id: str | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    request = RunRequest(
        course_id=course_id,
        industries=[i.strip() for i in industries or [] if i and i.strip()],
        candidate_count=candidate_count,
        enrichment_batch_id=prior_enrichment_batch_id,
    )
    cancel = CancellationToken(timeout) if timeout else None
    result = await orchestrator.run(request, principal_id, cancel=cancel)
    return {
        "success": result.success,
        "project_ids": result.project_ids,
        "generation_run_id": result.generation_run_id,
        "using_real_data": result.using_real_data,
        "errors": result.errors,
    }


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def run_to_dict(run: GenerationRun) -> dict[str, Any]:
    out = {f: getattr(run, f) for f in RUN_FIELDS}
    out["industries"] = json_parse(run.industries_json, [])
    out["errors"] = json_parse(run.errors_json, [])
    out["started_at"] = run.started_at.isoformat() if run.started_at else None
    out["completed_at"] = run.completed_at.isoformat() if run.completed_at else None
    return out


def project_summary(project: Project) -> dict[str, Any]:
    out = {f: getattr(project, f) for f in PROJECT_SUMMARY_FIELDS}
    out["created_at"] = project.created_at.isoformat() if project.created_at else None
    return out


def project_detail(project: Project) -> dict[str, Any]:
    out = project_summary(project)
    out.update(
        description=project.description,
        tasks=json_parse(project.tasks_json, []),
        deliverables=json_parse(project.deliverables_json, []),
        skills=json_parse(project.skills_json, []),
        lo_alignment=project.lo_alignment,
    )
    forms = project.forms
    out["forms"] = {
        f"form{i}": json_parse(getattr(forms, f"form{i}_json"), {}) for i in range(1, 7)
    } if forms else None
    out["milestones"] = json_parse(forms.milestones_json, []) if forms else []
    meta = project.meta
    out["metadata"] = {
        "market_alignment_score": meta.market_alignment_score,
        "estimated_roi": json_parse(meta.estimated_roi_json, {}),
        "pricing_breakdown": json_parse(meta.pricing_breakdown_json, {}),
        "lo_alignment_detail": json_parse(meta.lo_alignment_detail_json, None),
        "scoring_rationale": json_parse(meta.scoring_rationale_json, {}),
        "companies_considered": json_parse(meta.companies_considered_json, []),
        "selection_criteria": json_parse(meta.selection_criteria_json, {}),
        "algorithm_version": meta.algorithm_version,
        "ai_model_version": meta.ai_model_version,
        "generation_attempts": meta.generation_attempts,
        "quality_issues": json_parse(meta.quality_issues_json, []),
    } if meta else None
    return out


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _owned_course(session: Session, course_id: int, principal_id: str | None) -> CourseProfile:
    course = session.get(CourseProfile, course_id)
    if course is None:
        raise NotFoundError(f"Course {course_id} not found")
    if principal_id is not None and course.owner_id != principal_id:
        raise AuthorizationError(f"Course {course_id} is not owned by {principal_id!r}")
    return course


def get_run(session: Session, run_id: int, principal_id: str | None = None) -> dict[str, Any]:
    run = session.get(GenerationRun, run_id)
    if run is None:
        raise NotFoundError(f"Generation run {run_id} not found")
    _owned_course(session, run.course_id, principal_id)
    return run_to_dict(run)


def list_course_projects(session: Session, course_id: int, principal_id: str | None = None) -> list[dict[str, Any]]:
    _owned_course(session, course_id, principal_id)
    rows = session.execute(
        select(Project)
        .where(Project.course_id == course_id)
        .order_by(Project.final_score.desc(), Project.id)
    ).scalars().all()
    return [project_summary(p) for p in rows]


def get_project(session: Session, project_id: int, principal_id: str | None = None) -> dict[str, Any]:
    project = session.get(Project, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    _owned_course(session, project.course_id, principal_id)
    return project_detail(project)


# ---------------------------------------------------------------------------
# Store maintenance
# ---------------------------------------------------------------------------


def create_course(session: Session, data: dict[str, Any]) -> dict[str, Any]:
    """Insert a course from a plain mapping (YAML/JSON)."""
    owner = str(data.get("owner_id") or "").strip()
    title = str(data.get("title") or "").strip()
    outcomes = str_list(data.get("outcomes"))
    if not owner or not title or not outcomes:
        raise InvalidInputError("A course needs owner_id, title and at least one outcome")
    course = CourseProfile(
        owner_id=owner,
        title=title,
        code=str(data.get("code") or ""),
        level=str(data.get("level") or ""),
        outcomes_json=json.dumps(outcomes),
        artifacts_json=json.dumps(str_list(data.get("artifacts"))),
        topics_json=json.dumps(str_list(data.get("topics"))),
        weeks=int(data.get("weeks") or 12),
        hours_per_week=int(data.get("hours_per_week") or 10),
        city_zip=str(data.get("location") or ""),
    )
    session.add(course)
    session.commit()
    return {"id": course.id, "title": course.title, "owner_id": course.owner_id}


def import_companies(
    session: Session, records: list[dict[str, Any]], enrichment_batch_id: str | None = None,
) -> dict[str, int]:
    """Upsert company profiles, optionally tagging them with an enrichment batch."""
    imported = skipped = 0
    for record in records:
        entity = organization_to_candidate(record) if isinstance(record, dict) else None
        if entity is None:
            skipped += 1
            continue
        row = upsert_company(session, entity)
        row.source = "enrichment_batch" if enrichment_batch_id else "local_store"
        if enrichment_batch_id:
            row.enrichment_batch_id = enrichment_batch_id
        imported += 1
    session.commit()
    log.info("Imported %d companies (%d skipped)", imported, skipped)
    return {"imported": imported, "skipped": skipped}


def purge_filter_cache(session_factory: sessionmaker[Session], settings: Settings | None = None) -> dict[str, int]:
    s = settings or get_settings()
    removed = FilterCache(session_factory, ttl_days=s.filter_cache_ttl_days).purge_expired()
    return {"removed": removed}
