"""Pydantic request/response schemas for the PartnerScout API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class GenerationRequest(BaseModel):
    industries: list[str] = []
    candidate_count: int = Field(3, ge=1, le=10)
    prior_enrichment_batch_id: str | None = None

    @field_validator("industries")
    @classmethod
    def strip_industries(cls, v: list[str]) -> list[str]:
        return [i.strip() for i in v if i and i.strip()]


class GenerationError(BaseModel):
    company: str
    error: str
    code: str
    retry_after: float | None = None


class GenerationResult(BaseModel):
    success: bool
    project_ids: list[int]
    generation_run_id: int
    using_real_data: bool
    errors: list[GenerationError] = []


class GenerationRunOut(BaseModel):
    id: int
    course_id: int
    status: str
    requested_count: int
    projects_generated: int
    industries: list[str] = []
    enrichment_batch_id: str | None = None
    error_message: str | None = None
    errors: list[dict[str, Any]] = []
    started_at: str | None = None
    completed_at: str | None = None


class ProjectOut(BaseModel):
    id: int
    course_id: int
    generation_run_id: int | None = None
    company_profile_id: int | None = None
    company_name: str
    sector: str
    title: str
    tier: str
    duration_weeks: int
    team_size: int
    pricing_usd: int
    lo_score: float
    feasibility_score: float
    mutual_benefit_score: float
    final_score: float
    needs_review: bool
    created_at: str | None = None


class ProjectDetail(ProjectOut):
    description: str = ""
    tasks: list[str] = []
    deliverables: list[str] = []
    skills: list[str] = []
    lo_alignment: str = ""
    forms: dict[str, dict[str, Any]] | None = None
    milestones: list[dict[str, Any]] = []
    metadata: dict[str, Any] | None = None


class PurgeResult(BaseModel):
    removed: int


class ErrorOut(BaseModel):
    error: str
    code: str
    retry_after: float | None = None
