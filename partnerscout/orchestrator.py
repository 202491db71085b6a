"""Top-level driver for one generation run.

A run sources candidates once and then processes each candidate
independently; a failure for one candidate is recorded on the run and never
stops the others. Only a missing/foreign course or an empty candidate set
abort the run.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from partnerscout.alignment import map_alignment
from partnerscout.config import Settings
from partnerscout.domain import CandidateEntity, Course
from partnerscout.errors import (
    AuthorizationError,
    InvalidInputError,
    NoCandidatesError,
    NotFoundError,
    client_safe_error,
)
from partnerscout.generator import ProposalGenerator
from partnerscout.models import CourseProfile, GenerationRun
from partnerscout.persistence import PersistenceCoordinator, ProjectBundle
from partnerscout.pricing import estimate_price, estimate_roi
from partnerscout.scoring import market_alignment_for, score_proposal
from partnerscout.sourcing import CandidateSourcer
from partnerscout.utils import utcnow

log = logging.getLogger(__name__)

MAX_CANDIDATES = 10


@dataclass
class RunRequest:
    course_id: int
    industries: list[str] = field(default_factory=list)
    candidate_count: int = 3
    enrichment_batch_id: str | None = None


@dataclass
class RunResult:
    success: bool
    project_ids: list[int]
    generation_run_id: int
    using_real_data: bool
    errors: list[dict[str, Any]] = field(default_factory=list)


class CancellationToken:
    """Cooperative cancellation, checked between candidates."""

    def __init__(self, timeout: float | None = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._deadline = clock() + timeout if timeout else None
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._deadline is not None and self._clock() >= self._deadline


class GenerationRunOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        sourcer: CandidateSourcer,
        generator: ProposalGenerator,
        persistence: PersistenceCoordinator,
        client: Any,
        settings: Settings,
    ):
        self._factory = session_factory
        self.sourcer = sourcer
        self.generator = generator
        self.persistence = persistence
        self.client = client
        self.settings = settings

    # -- run bookkeeping ----------------------------------------------------

    def _load_course(self, course_id: int, principal_id: str) -> Course:
        with self._factory() as session:
            row = session.get(CourseProfile, course_id)
            if row is None:
                raise NotFoundError(f"Course {course_id} not found")
            if row.owner_id != principal_id:
                raise AuthorizationError(f"Course {course_id} is not owned by {principal_id!r}")
            return row.to_course()

    def _create_run(self, request: RunRequest, principal_id: str) -> int:
        with self._factory.begin() as session:
            run = GenerationRun(
                course_id=request.course_id,
                principal_id=principal_id,
                status="pending",
                requested_count=request.candidate_count,
                industries_json=json.dumps(request.industries),
                enrichment_batch_id=request.enrichment_batch_id,
                started_at=utcnow(),
            )
            session.add(run)
            session.flush()
            return run.id

    def _finish_run(
        self,
        run_id: int,
        status: str,
        generated: int,
        errors: list[dict[str, Any]],
        message: str | None = None,
    ) -> None:
        with self._factory.begin() as session:
            run = session.get(GenerationRun, run_id)
            run.status = status
            run.projects_generated = generated
            run.errors_json = json.dumps(errors)
            run.error_message = message
            run.completed_at = utcnow()

    # -- per candidate --------------------------------------------------------

    async def _process(
        self,
        course: Course,
        candidate: CandidateEntity,
        run_id: int,
        considered: list[dict[str, Any]],
        request: RunRequest,
    ) -> tuple[int | None, str | None]:
        s = self.settings
        outcome = await self.generator.generate(candidate, course)
        proposal = outcome.proposal

        score = await score_proposal(self.client, proposal, course, s)
        pricing = estimate_price(
            course.weeks, course.hours_per_week, s.team_size, proposal.tier, candidate,
            rounding_unit=s.price_rounding_unit,
        )
        detail = await map_alignment(
            self.client, proposal.tasks, proposal.deliverables, course.outcomes, proposal.lo_alignment,
        )

        bundle = ProjectBundle(
            course=course,
            candidate=candidate,
            proposal=proposal,
            score=score,
            pricing=pricing,
            alignment_detail=detail,
            market_alignment=market_alignment_for(proposal, candidate, course),
            roi=estimate_roi(pricing.final_price, proposal.deliverables, candidate),
            needs_review=outcome.needs_review,
            attempts=outcome.attempts,
            issues=outcome.issues,
            generation_run_id=run_id,
            companies_considered=considered,
            selection_criteria={
                "industries": request.industries,
                "location": course.location,
                "relevance_cutoff": s.relevance_cutoff,
                "source": candidate.source,
            },
            algorithm_version=s.algorithm_version,
            ai_model_version=getattr(self.client, "model", "") or "",
        )
        result = self.persistence.persist(bundle)
        return result.project_id, result.reason

    # -- entry point ------------------------------------------------------------

    async def run(
        self,
        request: RunRequest,
        principal_id: str,
        cancel: CancellationToken | None = None,
    ) -> RunResult:
        if not 1 <= request.candidate_count <= MAX_CANDIDATES:
            raise InvalidInputError(f"candidate_count must be between 1 and {MAX_CANDIDATES}")
        course = self._load_course(request.course_id, principal_id)
        if cancel is None and self.settings.run_timeout_seconds:
            cancel = CancellationToken(self.settings.run_timeout_seconds)

        run_id = self._create_run(request, principal_id)
        log.info("Generation run %d started for course %d (%d candidates requested)",
                 run_id, course.id, request.candidate_count)

        try:
            candidates = await self.sourcer.source_candidates(
                course, request.industries, request.candidate_count, request.enrichment_batch_id,
            )
        except Exception as exc:
            self._finish_run(run_id, "failed", 0, [], message=client_safe_error(exc)["error"])
            raise
        if not candidates:
            err = NoCandidatesError(f"No candidates found for course {course.id} near {course.location!r}")
            self._finish_run(run_id, "failed", 0, [], message=err.public_message)
            raise err

        considered = [
            {"name": c.name, "source": c.source, "relevance": c.relevance, "profile_id": c.profile_id}
            for c in candidates
        ]
        project_ids: list[int] = []
        errors: list[dict[str, Any]] = []
        message = None

        for i, candidate in enumerate(candidates):
            if cancel is not None and cancel.cancelled:
                message = f"Run cancelled after {i} of {len(candidates)} candidates"
                log.warning("Generation run %d: %s", run_id, message)
                break
            if i > 0 and self.settings.inter_call_delay > 0:
                await asyncio.sleep(self.settings.inter_call_delay)
            try:
                project_id, reason = await self._process(course, candidate, run_id, considered, request)
            except Exception as exc:
                errors.append({"company": candidate.name, **client_safe_error(exc)})
                continue
            if project_id is None:
                log.warning("Project for %s was not saved: %s", candidate.name, reason)
                errors.append({
                    "company": candidate.name,
                    "error": "The generated project could not be saved.",
                    "code": "PERSISTENCE_FAILED",
                })
            else:
                project_ids.append(project_id)

        self._finish_run(run_id, "completed", len(project_ids), errors, message=message)
        log.info("Generation run %d completed: %d/%d projects", run_id, len(project_ids), len(candidates))
        return RunResult(
            success=True,
            project_ids=project_ids,
            generation_run_id=run_id,
            using_real_data=any(c.is_real for c in candidates),
            errors=errors,
        )
