from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from partnerscout.domain import CandidateEntity, Course
from partnerscout.utils import json_parse, str_list


class Base(DeclarativeBase):
    pass


class CourseProfile(Base):
    __tablename__ = "course_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    code: Mapped[str] = mapped_column(String(50), default="")
    level: Mapped[str] = mapped_column(String(50), default="")
    outcomes_json: Mapped[str] = mapped_column(Text, default="[]")
    artifacts_json: Mapped[str] = mapped_column(Text, default="[]")
    topics_json: Mapped[str] = mapped_column(Text, default="[]")
    weeks: Mapped[int] = mapped_column(Integer, default=12)
    hours_per_week: Mapped[int] = mapped_column(Integer, default=10)
    city_zip: Mapped[str] = mapped_column(String(200), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    projects: Mapped[list[Project]] = relationship("Project", back_populates="course")

    def to_course(self) -> Course:
        return Course(
            id=self.id,
            owner_id=self.owner_id,
            title=self.title,
            code=self.code or "",
            level=self.level or "",
            outcomes=tuple(str_list(json_parse(self.outcomes_json, []))),
            artifacts=tuple(str_list(json_parse(self.artifacts_json, []))),
            topics=tuple(str_list(json_parse(self.topics_json, []))),
            weeks=self.weeks or 12,
            hours_per_week=self.hours_per_week or 10,
            location=self.city_zip or "",
        )


class CompanyProfile(Base):
    __tablename__ = "company_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    sector: Mapped[str] = mapped_column(String(200), default="")
    size: Mapped[str] = mapped_column(String(50), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    website: Mapped[str] = mapped_column(String(500), default="")
    city: Mapped[str] = mapped_column(String(200), default="")
    zip: Mapped[str] = mapped_column(String(20), default="", index=True)
    inferred_needs_json: Mapped[str] = mapped_column(Text, default="[]")
    job_postings_json: Mapped[str] = mapped_column(Text, default="[]")
    technologies_json: Mapped[str] = mapped_column(Text, default="[]")
    funding_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    total_funding_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    employee_count: Mapped[str | None] = mapped_column(String(50), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contact_title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    data_completeness_score: Mapped[int] = mapped_column(Integer, default=0)
    enrichment_batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    source: Mapped[str] = mapped_column(String(50), default="local_store")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    def to_candidate(self, source: str | None = None) -> CandidateEntity:
        postings = json_parse(self.job_postings_json, [])
        return CandidateEntity(
            name=self.name,
            sector=self.sector or "",
            size=self.size or "",
            description=self.description or "",
            website=self.website or "",
            inferred_needs=tuple(str_list(json_parse(self.inferred_needs_json, []))),
            job_postings=tuple(p for p in postings if isinstance(p, dict)) if isinstance(postings, list) else (),
            technologies=tuple(str_list(json_parse(self.technologies_json, []))),
            funding_stage=self.funding_stage,
            total_funding_usd=self.total_funding_usd,
            employee_count=self.employee_count,
            city=self.city or "",
            zip=self.zip or "",
            contact_name=self.contact_name,
            contact_title=self.contact_title,
            contact_email=self.contact_email,
            contact_phone=self.contact_phone,
            data_completeness=self.data_completeness_score or 0,
            profile_id=self.id,
            source=source or self.source or "local_store",
        )


class GenerationRun(Base):
    __tablename__ = "generation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(Integer, ForeignKey("course_profiles.id"), nullable=False)
    principal_id: Mapped[str] = mapped_column(String(100), default="")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | completed | failed
    requested_count: Mapped[int] = mapped_column(Integer, default=0)
    projects_generated: Mapped[int] = mapped_column(Integer, default=0)
    industries_json: Mapped[str] = mapped_column(Text, default="[]")
    enrichment_batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    errors_json: Mapped[str] = mapped_column(Text, default="[]")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(Integer, ForeignKey("course_profiles.id"), nullable=False, index=True)
    generation_run_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("generation_runs.id"), nullable=True)
    company_profile_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("company_profiles.id"), nullable=True)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    sector: Mapped[str] = mapped_column(String(200), default="")
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    tasks_json: Mapped[str] = mapped_column(Text, default="[]")
    deliverables_json: Mapped[str] = mapped_column(Text, default="[]")
    skills_json: Mapped[str] = mapped_column(Text, default="[]")
    tier: Mapped[str] = mapped_column(String(30), default="Intermediate")
    lo_alignment: Mapped[str] = mapped_column(Text, default="")
    duration_weeks: Mapped[int] = mapped_column(Integer, default=12)
    team_size: Mapped[int] = mapped_column(Integer, default=3)
    pricing_usd: Mapped[int] = mapped_column(Integer, default=0)
    lo_score: Mapped[float] = mapped_column(Float, default=0.0)
    feasibility_score: Mapped[float] = mapped_column(Float, default=0.0)
    mutual_benefit_score: Mapped[float] = mapped_column(Float, default=0.0)
    final_score: Mapped[float] = mapped_column(Float, default=0.0)
    needs_review: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    course: Mapped[CourseProfile] = relationship("CourseProfile", back_populates="projects")
    forms: Mapped[ProjectForms | None] = relationship(
        "ProjectForms", back_populates="project", uselist=False, cascade="all, delete-orphan",
    )
    meta: Mapped[ProjectMetadata | None] = relationship(
        "ProjectMetadata", back_populates="project", uselist=False, cascade="all, delete-orphan",
    )


class ProjectForms(Base):
    __tablename__ = "project_forms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False, unique=True)
    form1_json: Mapped[str] = mapped_column(Text, default="{}")  # project details
    form2_json: Mapped[str] = mapped_column(Text, default="{}")  # company & contact
    form3_json: Mapped[str] = mapped_column(Text, default="{}")  # requirements
    form4_json: Mapped[str] = mapped_column(Text, default="{}")  # timeline
    form5_json: Mapped[str] = mapped_column(Text, default="{}")  # logistics
    form6_json: Mapped[str] = mapped_column(Text, default="{}")  # academic
    milestones_json: Mapped[str] = mapped_column(Text, default="[]")

    project: Mapped[Project] = relationship("Project", back_populates="forms")


class ProjectMetadata(Base):
    __tablename__ = "project_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False, unique=True)
    market_alignment_score: Mapped[float] = mapped_column(Float, default=0.0)
    estimated_roi_json: Mapped[str] = mapped_column(Text, default="{}")
    pricing_breakdown_json: Mapped[str] = mapped_column(Text, default="{}")
    lo_alignment_detail_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    scoring_rationale_json: Mapped[str] = mapped_column(Text, default="{}")
    companies_considered_json: Mapped[str] = mapped_column(Text, default="[]")
    selection_criteria_json: Mapped[str] = mapped_column(Text, default="{}")
    algorithm_version: Mapped[str] = mapped_column(String(30), default="")
    ai_model_version: Mapped[str] = mapped_column(String(100), default="")
    generation_attempts: Mapped[int] = mapped_column(Integer, default=1)
    quality_issues_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="meta")


class FilterCacheEntry(Base):
    __tablename__ = "filter_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    payload_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
