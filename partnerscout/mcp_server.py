from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from partnerscout import services
from partnerscout.db import get_session_factory, init_db, session_scope
from partnerscout.errors import PipelineError, client_safe_error

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def partnerscout_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "PartnerScout",
    instructions=(
        "PartnerScout matches university courses with partner organizations and "
        "generates scored, priced project proposals. Call generate_projects(course_id, "
        "principal_id) to start a run, get_generation_run(run_id, principal_id) to inspect "
        "it, and list_course_projects(course_id, principal_id) to browse the results. "
        "Every tool only returns data for courses owned by principal_id."
    ),
    lifespan=partnerscout_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("partnerscout://overview")
def partnerscout_overview() -> str:
    """Overview of PartnerScout: data model and generation workflow."""
    return json.dumps({
        "system": "PartnerScout: course/partner matching and project generation",
        "data_model": {
            "course": "A faculty-owned course with ordered learning outcomes, duration and location.",
            "company_profile": "A candidate partner organization with inferred needs and market intelligence.",
            "generation_run": "One invocation of the pipeline: pending, then completed or failed.",
            "project": "A generated proposal with scores, price, six detail forms and generation metadata.",
        },
        "sourcing_order": [
            "1. prior enrichment batch (by data completeness)",
            "2. live discovery near the course location",
            "3. local store, ranked by the intelligence filter",
            "4. generated suggestions, only if nothing else was found",
        ],
        "scores": "final = 0.5 * alignment + 0.3 * feasibility + 0.2 * mutual benefit, each 0-1.",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def generate_projects(
    course_id: int,
    principal_id: str,
    industries: list[str] | None = None,
    candidate_count: int = 3,
    prior_enrichment_batch_id: str | None = None,
) -> dict:
    """Run the generation pipeline for a course.

    Args:
        course_id: Course to generate projects for.
        principal_id: Id of the faculty member who owns the course.
        industries: Optional sector filter, e.g. ["Healthcare", "Software"].
        candidate_count: Number of partner candidates to process (1-10).
        prior_enrichment_batch_id: Use companies from this enrichment batch first.
    """
    try:
        orchestrator = services.build_orchestrator(get_session_factory())
        return await services.generate_projects(
            orchestrator, course_id, principal_id,
            industries=industries,
            candidate_count=candidate_count,
            prior_enrichment_batch_id=prior_enrichment_batch_id,
        )
    except PipelineError as exc:
        return client_safe_error(exc)


@mcp.tool()
def get_generation_run(run_id: int, principal_id: str) -> dict:
    """Get status, counts and per-candidate errors of a generation run owned by *principal_id*."""
    with session_scope() as session:
        try:
            return services.get_run(session, run_id, principal_id)
        except PipelineError as exc:
            return client_safe_error(exc)


@mcp.tool()
def list_course_projects(course_id: int, principal_id: str) -> dict:
    """List generated projects for a course owned by *principal_id*, best final score first."""
    with session_scope() as session:
        try:
            return {"projects": services.list_course_projects(session, course_id, principal_id)}
        except PipelineError as exc:
            return client_safe_error(exc)


@mcp.tool()
def get_project(project_id: int, principal_id: str) -> dict:
    """Get a project with its forms, milestones, pricing breakdown and alignment detail."""
    with session_scope() as session:
        try:
            return services.get_project(session, project_id, principal_id)
        except PipelineError as exc:
            return client_safe_error(exc)


def main():
    """Run the PartnerScout MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
