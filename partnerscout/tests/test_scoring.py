"""Tests for proposal scoring and market alignment."""
from __future__ import annotations

import pytest

from partnerscout.config import ScoreWeights
from partnerscout.domain import Proposal
from partnerscout.errors import RateLimitError, TransientError
from partnerscout.scoring import (
    ALIGNMENT_SYSTEM,
    alignment_score,
    course_keywords,
    expand_keywords,
    feasibility_score,
    final_score,
    market_alignment_score,
    score_proposal,
)

TASKS = ["Build a demand forecasting model in Python", "Evaluate the model against last year's data"]


class TestAlignmentScore:
    @pytest.mark.asyncio
    async def test_coverage_mapped_to_unit_interval(self, llm, course):
        llm.respond(ALIGNMENT_SYSTEM, {"coverage_percentage": 85})
        result = await alignment_score(llm, TASKS, ["Report"], course.outcomes)
        assert result.value == 0.85
        assert not result.degraded

    @pytest.mark.asyncio
    async def test_service_failure_yields_fallback(self, llm, course):
        llm.respond(ALIGNMENT_SYSTEM, TransientError("upstream 503"))
        result = await alignment_score(llm, TASKS, ["Report"], course.outcomes)
        assert result.value == 0.7
        assert result.degraded

    @pytest.mark.asyncio
    async def test_rate_limit_yields_fallback(self, llm, course):
        llm.respond(ALIGNMENT_SYSTEM, RateLimitError("quota", retry_after=30))
        result = await alignment_score(llm, TASKS, ["Report"], course.outcomes)
        assert result.value == 0.7
        assert result.reason == "RATE_LIMIT"

    @pytest.mark.asyncio
    async def test_unexpected_error_yields_fallback(self, llm, course):
        llm.respond(ALIGNMENT_SYSTEM, KeyError("content"))
        result = await alignment_score(llm, TASKS, ["Report"], course.outcomes)
        assert result.value == 0.7

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [
        {"coverage_percentage": 140},
        {"coverage_percentage": -5},
        {"coverage_percentage": "85"},
        {"coverage_percentage": True},
        {"coverage": 85},
        ["not", "an", "object"],
    ])
    async def test_malformed_coverage_yields_fallback(self, llm, course, reply):
        llm.respond(ALIGNMENT_SYSTEM, reply)
        result = await alignment_score(llm, TASKS, ["Report"], course.outcomes)
        assert result.value == 0.7
        assert result.degraded

    @pytest.mark.asyncio
    async def test_configured_fallback(self, llm, course):
        llm.respond(ALIGNMENT_SYSTEM, TransientError("down"))
        result = await alignment_score(llm, TASKS, ["Report"], course.outcomes, fallback=0.55)
        assert result.value == 0.55

    @pytest.mark.asyncio
    async def test_no_client_or_outcomes(self, llm, course):
        assert (await alignment_score(None, TASKS, [], course.outcomes)).value == 0.7
        assert (await alignment_score(llm, TASKS, [], [])).value == 0.7
        assert llm.calls == []


class TestComponentScores:
    def test_feasibility_bands(self):
        assert feasibility_score(12) == 0.85
        assert feasibility_score(16) == 0.85
        assert feasibility_score(11) == 0.65
        assert feasibility_score(8, threshold=8, long=0.9) == 0.9

    def test_final_is_weighted_sum(self):
        assert final_score(0.7, 0.85, 0.8) == round(0.5 * 0.7 + 0.3 * 0.85 + 0.2 * 0.8, 2)
        assert final_score(1.0, 1.0, 1.0) == 1.0
        assert final_score(0.0, 0.0, 0.0) == 0.0

    def test_final_with_custom_weights(self):
        weights = ScoreWeights(alignment=0.6, feasibility=0.2, mutual_benefit=0.2)
        assert final_score(0.9, 0.65, 0.8, weights) == round(0.6 * 0.9 + 0.2 * 0.65 + 0.2 * 0.8, 2)

    def test_final_clamped(self):
        weights = ScoreWeights(alignment=1.0, feasibility=1.0, mutual_benefit=1.0)
        assert final_score(0.9, 0.9, 0.9, weights) == 1.0

    @pytest.mark.asyncio
    async def test_score_proposal(self, llm, course, settings):
        llm.respond(ALIGNMENT_SYSTEM, {"coverage_percentage": 80})
        proposal = Proposal(title="t", description="d", tasks=tuple(TASKS), deliverables=("Report",))
        score = await score_proposal(llm, proposal, course, settings)
        assert score.alignment == 0.8
        assert score.feasibility == 0.85
        assert score.mutual_benefit == 0.8
        assert score.final == round(0.5 * 0.8 + 0.3 * 0.85 + 0.2 * 0.8, 2)
        assert 0.0 <= score.final <= 1.0

    @pytest.mark.asyncio
    async def test_score_proposal_degraded(self, llm, course, settings):
        llm.respond(ALIGNMENT_SYSTEM, TransientError("down"))
        proposal = Proposal(title="t", description="d", tasks=tuple(TASKS), deliverables=("Report",))
        score = await score_proposal(llm, proposal, course, settings)
        assert score.alignment == 0.7
        assert score.alignment_degraded
        assert score.as_dict()["lo_score"] == 0.7


class TestMarketAlignment:
    def test_components(self):
        score = market_alignment_score(
            tasks=["Build a demand forecasting model in Python"],
            needs=["demand forecasting", "office relocation"],
            job_postings=[{"title": "Data Analyst"}, {"title": "Receptionist"}],
            technologies=["SQL", "Excel"],
            keywords=["data"],
        )
        # needs 1/2 * 40, jobs 1/2 * 30, tech 1/2 * 30
        assert score == 50

    def test_empty_inputs(self):
        assert market_alignment_score([], [], [], [], []) == 0

    def test_bounded(self):
        score = market_alignment_score(
            tasks=["forecasting pipeline"],
            needs=["forecasting"],
            job_postings=[{"title": "ML Engineer"}],
            technologies=["AWS"],
            keywords=["ml", "cloud"],
        )
        assert score == 100

    def test_course_keywords(self, course):
        keywords = course_keywords(course)
        assert "machine" in keywords
        assert "forecasting" in keywords
        assert "using" not in keywords
        # outcome words need more than four characters
        assert "data" not in keywords

    def test_synonym_expansion(self):
        expanded = expand_keywords(["AI"])
        assert "ai" in expanded
        assert "machine learning" in expanded
