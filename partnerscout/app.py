from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from partnerscout import services
from partnerscout.db import get_session_factory, init_db, session_generator
from partnerscout.errors import AuthorizationError, PipelineError, RateLimitError, client_safe_error
from partnerscout.orchestrator import GenerationRunOrchestrator
from partnerscout.schemas import (
    ErrorOut,
    GenerationRequest,
    GenerationResult,
    GenerationRunOut,
    ProjectDetail,
    ProjectOut,
    PurgeResult,
)

log = logging.getLogger(__name__)

ERROR_RESPONSES = {code: {"model": ErrorOut} for code in (403, 404, 422, 429, 502)}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="PartnerScout",
    version="0.1.0",
    description=(
        "Matches academic courses with partner organizations and generates "
        "scored, priced project proposals for each pairing. Requests that act "
        "on a course must carry the owning faculty member's id in X-Principal-Id."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Generation", "description": "Start generation runs and inspect their status."},
        {"name": "Projects", "description": "Browse generated projects with forms and metadata."},
        {"name": "Admin", "description": "Maintenance operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & error handling
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def session_factory() -> sessionmaker[Session]:
    return get_session_factory()


def get_orchestrator(factory: sessionmaker[Session] = Depends(session_factory)) -> GenerationRunOrchestrator:
    return services.build_orchestrator(factory)


def principal(x_principal_id: str | None = Header(None)) -> str:
    if not x_principal_id or not x_principal_id.strip():
        raise AuthorizationError("Missing X-Principal-Id header")
    return x_principal_id.strip()


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    payload = client_safe_error(exc)
    headers = {}
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)


# ---------------------------------------------------------------------------
# Routes: Generation
# ---------------------------------------------------------------------------


@app.post("/api/courses/{course_id}/generate", response_model=GenerationResult,
          tags=["Generation"], summary="Generate partner projects for a course",
          responses=ERROR_RESPONSES)
async def generate(
    course_id: int,
    body: GenerationRequest,
    principal_id: str = Depends(principal),
    orchestrator: GenerationRunOrchestrator = Depends(get_orchestrator),
):
    return await services.generate_projects(
        orchestrator,
        course_id,
        principal_id,
        industries=body.industries,
        candidate_count=body.candidate_count,
        prior_enrichment_batch_id=body.prior_enrichment_batch_id,
    )


@app.get("/api/generation-runs/{run_id}", response_model=GenerationRunOut,
         tags=["Generation"], summary="Get generation run status")
async def get_generation_run(
    run_id: int,
    principal_id: str = Depends(principal),
    session: Session = Depends(db_session),
):
    return services.get_run(session, run_id, principal_id)


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@app.get("/api/courses/{course_id}/projects", response_model=list[ProjectOut],
         tags=["Projects"], summary="List projects generated for a course")
async def list_course_projects(
    course_id: int,
    principal_id: str = Depends(principal),
    session: Session = Depends(db_session),
):
    return services.list_course_projects(session, course_id, principal_id)


@app.get("/api/projects/{project_id}", response_model=ProjectDetail,
         tags=["Projects"], summary="Get project with forms and generation metadata")
async def get_project(
    project_id: int,
    principal_id: str = Depends(principal),
    session: Session = Depends(db_session),
):
    return services.get_project(session, project_id, principal_id)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.delete("/api/filter-cache/expired", response_model=PurgeResult,
            tags=["Admin"], summary="Purge expired filter cache entries")
async def purge_filter_cache(factory: sessionmaker[Session] = Depends(session_factory)):
    return services.purge_filter_cache(factory)


def main():
    import uvicorn
    uvicorn.run("partnerscout.app:app", host="127.0.0.1", port=8001)
