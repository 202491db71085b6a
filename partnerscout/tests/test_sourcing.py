"""Tests for the candidate sourcing chain and the intelligence filter."""
from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from partnerscout.domain import CandidateEntity
from partnerscout.errors import DiscoveryError, TransientError
from partnerscout.filter_cache import FilterCache, cache_key
from partnerscout.models import CompanyProfile
from partnerscout.sourcing import (
    FALLBACK_SYSTEM,
    FILTER_SYSTEM,
    CandidateSourcer,
    DiscoveryStage,
    EnrichedBatchStage,
    GenerativeFallbackStage,
    IntelligenceFilter,
    LocalStoreStage,
    SourceStage,
    keyword_heuristic,
    parse_location,
)
from partnerscout.utils import utcnow


def _discovery(found=None, error=None):
    client = MagicMock()
    client.is_configured = True
    client.search = AsyncMock(return_value=found or [], side_effect=error)
    return client


def _chain(session_factory, llm, discovery, cache=None):
    return CandidateSourcer([
        EnrichedBatchStage(session_factory),
        DiscoveryStage(discovery, session_factory),
        LocalStoreStage(session_factory, IntelligenceFilter(llm, cache, cutoff=35)),
        GenerativeFallbackStage(llm),
    ])


class _StaticStage(SourceStage):
    def __init__(self, name, entities, only_when_empty=False):
        self.name = name
        self.only_when_empty = only_when_empty
        self.entities = entities
        self.calls = 0

    async def source(self, ctx, limit):
        self.calls += 1
        return self.entities[:limit]


class TestSourcingChain:
    @pytest.mark.asyncio
    async def test_enrichment_batch_satisfies_request(self, session_factory, llm, course, add_company):
        add_company("Lower Completeness Co", batch="batch-1", completeness=60)
        add_company("Higher Completeness Co", batch="batch-1", completeness=90)
        add_company("Other Batch Co", batch="batch-2", completeness=99)
        discovery = _discovery()

        found = await _chain(session_factory, llm, discovery).source_candidates(
            course, [], 2, enrichment_batch_id="batch-1",
        )

        assert [c.name for c in found] == ["Higher Completeness Co", "Lower Completeness Co"]
        assert all(c.source == "enrichment_batch" for c in found)
        assert all(c.profile_id is not None for c in found)
        discovery.search.assert_not_awaited()
        assert llm.count(FILTER_SYSTEM) == 0
        assert llm.count(FALLBACK_SYSTEM) == 0

    @pytest.mark.asyncio
    async def test_local_store_ranked_by_filter(self, session_factory, llm, course, add_company):
        for name, completeness in [("A", 50), ("B", 40), ("C", 30), ("D", 20), ("E", 10)]:
            add_company(f"{name} Clinic", completeness=completeness)
        llm.respond(FILTER_SYSTEM, {"scores": [
            {"index": 0, "relevance": 40, "reason": "scheduling data"},
            {"index": 1, "relevance": 10, "reason": "unrelated"},
            {"index": 2, "relevance": 60, "reason": "forecasting need"},
            {"index": 3, "relevance": 20, "reason": "weak"},
            {"index": 4, "relevance": 90, "reason": "hiring data scientists"},
        ]})
        discovery = _discovery(found=[])

        found = await _chain(session_factory, llm, discovery).source_candidates(course, [], 5)

        assert [c.name for c in found] == ["E Clinic", "C Clinic", "A Clinic"]
        assert [c.relevance for c in found] == [90, 60, 40]
        assert found[0].relevance_reason == "hiring data scientists"
        discovery.search.assert_awaited_once()
        assert llm.count(FALLBACK_SYSTEM) == 0

    @pytest.mark.asyncio
    async def test_count_cap_and_later_stages_skipped(self, course):
        first = _StaticStage("first", [CandidateEntity(name=f"Org {i}") for i in range(4)])
        second = _StaticStage("second", [CandidateEntity(name="Late Org")])
        found = await CandidateSourcer([first, second]).source_candidates(course, [], 3)
        assert len(found) == 3
        assert second.calls == 0

    @pytest.mark.asyncio
    async def test_later_stage_fills_only_deficit(self, course):
        first = _StaticStage("first", [CandidateEntity(name="Org A")])
        second = _StaticStage("second", [CandidateEntity(name=f"Org {c}") for c in "BCDE"])
        found = await CandidateSourcer([first, second]).source_candidates(course, [], 3)
        assert [c.name for c in found] == ["Org A", "Org B", "Org C"]

    @pytest.mark.asyncio
    async def test_duplicates_dropped_by_name(self, course):
        first = _StaticStage("first", [CandidateEntity(name="Acme Labs")])
        second = _StaticStage("second", [CandidateEntity(name="  ACME labs "), CandidateEntity(name="Beta")])
        found = await CandidateSourcer([first, second]).source_candidates(course, [], 3)
        assert [c.name for c in found] == ["Acme Labs", "Beta"]

    @pytest.mark.asyncio
    async def test_fallback_only_when_nothing_sourced(self, course):
        first = _StaticStage("first", [CandidateEntity(name="Real Org")])
        fallback = _StaticStage("fallback", [CandidateEntity(name="Imagined Org")], only_when_empty=True)
        found = await CandidateSourcer([first, fallback]).source_candidates(course, [], 3)
        assert [c.name for c in found] == ["Real Org"]
        assert fallback.calls == 0

    @pytest.mark.asyncio
    async def test_generative_fallback_used_when_empty(self, session_factory, llm, course):
        llm.respond(FALLBACK_SYSTEM, {"organizations": [
            {"name": "Heartland Logistics", "sector": "Logistics", "inferred_needs": ["route optimization"]},
            {"name": ""},
        ]})
        found = await _chain(session_factory, llm, _discovery()).source_candidates(course, [], 3)
        assert [c.name for c in found] == ["Heartland Logistics"]
        assert found[0].source == "generated"
        assert not found[0].is_real

    @pytest.mark.asyncio
    async def test_failing_stage_does_not_abort(self, session_factory, llm, course, add_company):
        add_company("Survivor Clinic", completeness=80)
        llm.respond(FILTER_SYSTEM, {"scores": [{"index": 0, "relevance": 75, "reason": "fit"}]})
        discovery = _discovery(error=DiscoveryError("upstream down"))
        found = await _chain(session_factory, llm, discovery).source_candidates(course, [], 2)
        assert [c.name for c in found] == ["Survivor Clinic"]

    @pytest.mark.asyncio
    async def test_discovery_results_are_stored(self, session_factory, llm, course):
        discovered = [CandidateEntity(name="Found Online Inc", sector="Software", zip="64111", source="discovery")]
        found = await _chain(session_factory, llm, _discovery(found=discovered)).source_candidates(course, [], 1)
        assert found[0].profile_id is not None
        with session_factory() as session:
            row = session.get(CompanyProfile, found[0].profile_id)
            assert row.name == "Found Online Inc"
            assert row.source == "discovery"

    @pytest.mark.asyncio
    async def test_local_store_filters_by_location_and_industry(self, session_factory, llm, course, add_company):
        add_company("Near Clinic", zip="64110", sector="Healthcare")
        add_company("Far Clinic", zip="10001", sector="Healthcare")
        add_company("Near Bank", zip="64110", sector="Finance")
        llm.respond(FILTER_SYSTEM, {"scores": [{"index": 0, "relevance": 80, "reason": "fit"}]})
        stage = LocalStoreStage(session_factory, IntelligenceFilter(llm))
        sourcer = CandidateSourcer([stage])
        found = await sourcer.source_candidates(course, ["healthcare"], 3)
        assert [c.name for c in found] == ["Near Clinic"]


class TestIntelligenceFilter:
    ENTITIES = [
        CandidateEntity(name="Alpha", inferred_needs=("inventory forecasting",), profile_id=1),
        CandidateEntity(name="Beta", inferred_needs=("general sales growth",), profile_id=2),
        CandidateEntity(name="Gamma", technologies=("Python",), profile_id=3),
    ]

    @pytest.mark.asyncio
    async def test_cutoff_and_order(self, llm, course):
        llm.respond(FILTER_SYSTEM, {"scores": [
            {"index": 0, "relevance": 35, "reason": "at cutoff"},
            {"index": 1, "relevance": 34.9, "reason": "below"},
            {"index": 2, "relevance": 88, "reason": "strong"},
            {"index": 7, "relevance": 99, "reason": "out of range"},
        ]})
        ranked = await IntelligenceFilter(llm, cutoff=35).rank(course, self.ENTITIES)
        assert [e.name for e in ranked] == ["Gamma", "Alpha"]

    @pytest.mark.asyncio
    async def test_service_failure_uses_heuristic(self, llm, course):
        llm.respond(FILTER_SYSTEM, TransientError("down"))
        ranked = await IntelligenceFilter(llm).rank(course, self.ENTITIES)
        assert [e.name for e in ranked] == ["Alpha", "Gamma"]

    @pytest.mark.asyncio
    async def test_malformed_reply_uses_heuristic(self, llm, course):
        llm.respond(FILTER_SYSTEM, {"results": "none"})
        ranked = await IntelligenceFilter(llm).rank(course, self.ENTITIES)
        assert [e.name for e in ranked] == ["Alpha", "Gamma"]

    @pytest.mark.asyncio
    async def test_cache_hit_skips_service(self, session_factory, llm, course):
        llm.respond(FILTER_SYSTEM, {"scores": [{"index": 0, "relevance": 70, "reason": "fit"}]})
        cache = FilterCache(session_factory)
        first = await IntelligenceFilter(llm, cache).rank(course, self.ENTITIES)
        llm.respond(FILTER_SYSTEM, TransientError("should not be called"))
        second = await IntelligenceFilter(llm, cache).rank(course, list(reversed(self.ENTITIES)))
        assert [e.name for e in first] == [e.name for e in second] == ["Alpha"]
        assert llm.count(FILTER_SYSTEM) == 1
        assert second[0].relevance == 70

    @pytest.mark.asyncio
    async def test_expired_cache_entry_recomputed(self, session_factory, llm, course):
        now = utcnow()
        llm.respond(FILTER_SYSTEM, {"scores": [{"index": 2, "relevance": 50, "reason": "ok"}]})
        await IntelligenceFilter(llm, FilterCache(session_factory, now=lambda: now)).rank(course, self.ENTITIES)
        later = FilterCache(session_factory, now=lambda: now + timedelta(days=8))
        await IntelligenceFilter(llm, later).rank(course, self.ENTITIES)
        assert llm.count(FILTER_SYSTEM) == 2


class TestHelpers:
    def test_keyword_heuristic(self):
        entities = [
            CandidateEntity(name="Specific", inferred_needs=("warehouse slotting model",)),
            CandidateEntity(name="Generic", inferred_needs=("Improve operations", "General support")),
            CandidateEntity(name="Funded", funding_stage="Series A"),
        ]
        assert [e.name for e in keyword_heuristic(entities)] == ["Specific", "Funded"]

    @pytest.mark.parametrize("location,expected", [
        ("Kansas City, MO 64110", ("64110", None)),
        ("64110-1234", ("64110", None)),
        ("Overland Park, KS", (None, "Overland Park")),
        ("", (None, None)),
    ])
    def test_parse_location(self, location, expected):
        assert parse_location(location) == expected

    def test_cache_key_ignores_candidate_order(self, course):
        a = CandidateEntity(name="A", profile_id=1)
        b = CandidateEntity(name="B")
        assert cache_key(course, [a, b]) == cache_key(course, [b, a])
        assert cache_key(course, [a]) != cache_key(replace(course, level="Undergraduate"), [a])
