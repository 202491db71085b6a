"""Shared fixtures: in-memory SQLite store, fast settings and a scripted LLM."""
from __future__ import annotations

import copy
import json
from collections.abc import Iterator
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from partnerscout.alignment import ALIGNMENT_MAP_SYSTEM
from partnerscout.config import Settings
from partnerscout.domain import CandidateEntity, Course
from partnerscout.errors import LLMCallError
from partnerscout.generator import PROPOSAL_SYSTEM
from partnerscout.models import Base, CompanyProfile, CourseProfile
from partnerscout.scoring import ALIGNMENT_SYSTEM
from partnerscout.sourcing import FALLBACK_SYSTEM, FILTER_SYSTEM
from partnerscout.utils import extract_json

DESCRIPTION = (
    "Students will build a patient demand forecasting pipeline for a regional clinic "
    "network that currently schedules staff from spreadsheets. The team audits two years "
    "of appointment history, engineers calendar and weather features, compares ARIMA and "
    "gradient boosted models, and hands over a dashboard that operations managers can "
    "use every Monday to plan nurse rosters for the coming fortnight with measurable accuracy."
)

VALID_PROPOSAL: dict[str, Any] = {
    "title": "Demand Forecasting Pipeline for a Regional Clinic Network",
    "description": DESCRIPTION,
    "tasks": [
        "**Audit** 24 months of appointment data in PostgreSQL",
        "- Build ARIMA baseline forecasts with Python statsmodels",
        "3. Engineer weather and holiday features with pandas",
        "Evaluate models with rolling-origin cross validation",
    ],
    "deliverables": [
        "Forecasting Dashboard in Tableau (Week 8-10)",
        "Week 12: Technical Documentation for the data pipeline",
        "Model evaluation memo comparing three forecasting approaches",
    ],
    "skills": ["Time Series Forecasting", "SQL Querying", "Python Data Engineering"],
    "tier": "Advanced",
    "lo_alignment": "Outcome 1 is practised in the audit, outcome 2 in the model comparison.",
    "contact": {"name": "Dana Lee", "title": "COO", "email": "dana.lee@example.org", "phone": "816-555-0134"},
    "company_description": "Regional outpatient clinic network.",
    "majors": ["Data Science"],
}

VALID_MAPPING: dict[str, Any] = {
    "outcome_mappings": [
        {"outcome_id": "0", "coverage_percentage": 80, "aligned_tasks": [0, 1], "aligned_deliverables": [0]},
        {"outcome_id": "1", "coverage_percentage": 40, "aligned_tasks": [2, 3], "aligned_deliverables": [2]},
    ],
    "task_mappings": [{"task_id": 0, "primary_outcome": "0"}],
    "deliverable_mappings": [{"deliverable_id": 0, "primary_outcome": "0", "supporting_tasks": [0]}],
}


class FakeLLM:
    """Scripted stand-in for ``LLMClient``.

    Responses are keyed by system prompt. A response may be a value, an
    exception (raised), an iterator (one item per call) or a callable taking
    the user prompt. String replies are parsed the way ``LLMClient.call`` does.
    """

    model = "fake-model"

    def __init__(self) -> None:
        self.responses: dict[str, Any] = {
            PROPOSAL_SYSTEM: VALID_PROPOSAL,
            ALIGNMENT_SYSTEM: {"coverage_percentage": 80},
            ALIGNMENT_MAP_SYSTEM: VALID_MAPPING,
            FILTER_SYSTEM: {"scores": []},
            FALLBACK_SYSTEM: {"organizations": []},
        }
        self.calls: list[tuple[str, str]] = []

    def respond(self, system: str, value: Any) -> None:
        self.responses[system] = value

    def count(self, system: str) -> int:
        return sum(1 for s, _ in self.calls if s == system)

    async def call(self, system: str, user: str) -> Any:
        self.calls.append((system, user))
        value = self.responses[system]
        if isinstance(value, Iterator):
            value = next(value)
        elif callable(value):
            value = value(user)
        if isinstance(value, BaseException):
            raise value
        if isinstance(value, str):
            try:
                return extract_json(value)
            except json.JSONDecodeError as exc:
                raise LLMCallError(f"LLM returned invalid JSON: {value[:200]}") from exc
        return copy.deepcopy(value)


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        inter_call_delay=0.0,
        transport_backoff_base=0.0,
        quality_backoff_step=0.0,
        discovery_min_interval=0.0,
    )


@pytest.fixture()
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture()
def make_course(session_factory):
    def _make(owner_id: str = "prof-1", **kwargs: Any) -> int:
        with session_factory() as session:
            course = CourseProfile(
                owner_id=owner_id,
                title=kwargs.get("title", "Applied Machine Learning"),
                level=kwargs.get("level", "Graduate"),
                outcomes_json=json.dumps(kwargs.get("outcomes", [
                    "Apply time series forecasting to operational data",
                    "Evaluate predictive models using cross validation",
                ])),
                topics_json=json.dumps(kwargs.get("topics", ["machine learning", "forecasting"])),
                weeks=kwargs.get("weeks", 14),
                hours_per_week=kwargs.get("hours_per_week", 10),
                city_zip=kwargs.get("location", "Kansas City, MO 64110"),
            )
            session.add(course)
            session.commit()
            return course.id
    return _make


@pytest.fixture()
def add_company(session_factory):
    def _add(name: str, **kwargs: Any) -> int:
        with session_factory() as session:
            row = CompanyProfile(
                name=name,
                sector=kwargs.get("sector", "Healthcare"),
                size=kwargs.get("size", "Medium"),
                city=kwargs.get("city", "Kansas City"),
                zip=kwargs.get("zip", "64110"),
                inferred_needs_json=json.dumps(kwargs.get("needs", ["patient demand forecasting"])),
                job_postings_json=json.dumps(kwargs.get("jobs", [])),
                technologies_json=json.dumps(kwargs.get("technologies", [])),
                funding_stage=kwargs.get("funding_stage"),
                data_completeness_score=kwargs.get("completeness", 50),
                enrichment_batch_id=kwargs.get("batch"),
                contact_email=kwargs.get("contact_email"),
            )
            session.add(row)
            session.commit()
            return row.id
    return _add


@pytest.fixture()
def course() -> Course:
    return Course(
        id=1,
        owner_id="prof-1",
        title="Applied Machine Learning",
        level="Graduate",
        outcomes=(
            "Apply time series forecasting to operational data",
            "Evaluate predictive models using cross validation",
        ),
        artifacts=("Final report",),
        weeks=14,
        hours_per_week=10,
        location="Kansas City, MO 64110",
        topics=("machine learning", "forecasting"),
    )


@pytest.fixture()
def candidate() -> CandidateEntity:
    return CandidateEntity(
        name="Prairie Health Partners",
        sector="Healthcare",
        size="Medium",
        inferred_needs=("patient demand forecasting",),
        city="Kansas City",
        zip="64110",
        data_completeness=70,
        profile_id=11,
    )
