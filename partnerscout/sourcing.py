"""Candidate sourcing: an ordered chain of data sources, each filling only the
deficit left by the stages before it.

Stage order is fixed:

1. ``EnrichedBatchStage``: entities from a prior enrichment batch, by data completeness
2. ``DiscoveryStage``: live discovery near the course location
3. ``LocalStoreStage``: previously stored entities, ranked by the intelligence filter
4. ``GenerativeFallbackStage``: LLM-suggested organizations, only if 1-3 found nothing
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from partnerscout.discovery import DiscoveryClient
from partnerscout.domain import CandidateEntity, Course
from partnerscout.errors import PipelineError
from partnerscout.filter_cache import FilterCache, cache_key
from partnerscout.models import CompanyProfile
from partnerscout.utils import str_list

log = logging.getLogger(__name__)

_ZIP_RE = re.compile(r"\b(\d{5})(?:-\d{4})?\b")

GENERIC_NEED_MARKERS = ("general", "sales growth", "improve")

FILTER_SYSTEM = """\
You match companies with university course projects. Be generous and
creative: a company is relevant if students could plausibly apply the
course's learning outcomes to any real problem the company has, even
indirectly.

For every company, give a relevance score from 0 to 100 and a short reason.
Respond with ONLY valid JSON:
{"scores": [{"index": 0, "relevance": 72, "reason": "..."}]}
"""

FALLBACK_SYSTEM = """\
You suggest real organizations that could sponsor a university course
project. Only name organizations that plausibly exist near the given
location. Respond with ONLY valid JSON:
{"organizations": [{"name": "...", "sector": "...", "size": "Small|Medium|Large|Enterprise|Nonprofit",
  "description": "...", "website": "...", "inferred_needs": ["..."]}]}
"""


@dataclass
class SourcingContext:
    course: Course
    industries: list[str]
    count: int
    enrichment_batch_id: str | None = None


# ---------------------------------------------------------------------------
# Intelligence filter
# ---------------------------------------------------------------------------


def is_generic_need(need: str) -> bool:
    text = need.lower()
    return any(marker in text for marker in GENERIC_NEED_MARKERS)


def keyword_heuristic(entities: Sequence[CandidateEntity]) -> list[CandidateEntity]:
    """Drop entities whose only signals are generic needs; keep input order."""
    kept = []
    for e in entities:
        specific = [n for n in e.inferred_needs if not is_generic_need(n)]
        if specific or e.has_market_intelligence:
            kept.append(e)
        else:
            log.debug("Heuristic filter dropped %s (generic needs only)", e.name)
    return kept


class IntelligenceFilter:
    """Scores a batch of entities against a course with one generative call."""

    def __init__(self, client: Any, cache: FilterCache | None = None, cutoff: int = 35):
        self.client = client
        self.cache = cache
        self.cutoff = cutoff

    async def rank(self, course: Course, entities: Sequence[CandidateEntity]) -> list[CandidateEntity]:
        if not entities:
            return []
        key = cache_key(course, entities)
        if self.cache is not None:
            cached = self._cache_get(key)
            if cached is not None:
                log.info("Filter cache hit for %d entities", len(entities))
                return self._apply(entities, cached)

        if self.client is None:
            return keyword_heuristic(entities)
        try:
            data = await self.client.call(FILTER_SYSTEM, self._prompt(course, entities))
        except PipelineError as exc:
            log.warning("Intelligence filter unavailable (%s); using keyword heuristic", exc.code)
            return keyword_heuristic(entities)

        ranked = self._parse(data, entities)
        if ranked is None:
            log.warning("Intelligence filter reply was malformed; using keyword heuristic")
            return keyword_heuristic(entities)
        if self.cache is not None:
            self._cache_put(key, ranked)
        return self._apply(entities, ranked)

    def _cache_get(self, key: str) -> list[dict[str, Any]] | None:
        try:
            return self.cache.get(key)
        except SQLAlchemyError as exc:
            log.warning("Filter cache read failed: %s", exc)
            return None

    def _cache_put(self, key: str, ranked: list[dict[str, Any]]) -> None:
        try:
            self.cache.put(key, ranked)
        except SQLAlchemyError as exc:
            log.warning("Filter cache write failed: %s", exc)

    @staticmethod
    def _prompt(course: Course, entities: Sequence[CandidateEntity]) -> str:
        lines = [
            f"COURSE: {course.title} ({course.level})",
            "LEARNING OUTCOMES:",
            *(f"- {o}" for o in course.outcomes),
            "",
            "COMPANIES:",
        ]
        for i, e in enumerate(entities):
            parts = [f"{i}. {e.name}", f"sector: {e.sector or 'unknown'}"]
            if e.inferred_needs:
                parts.append(f"needs: {'; '.join(e.inferred_needs[:5])}")
            if e.technologies:
                parts.append(f"tech: {', '.join(e.technologies[:8])}")
            if e.job_postings:
                titles = [str(j.get("title", "")) for j in e.job_postings[:3]]
                parts.append(f"hiring: {', '.join(t for t in titles if t)}")
            lines.append(" | ".join(parts))
        return "\n".join(lines)

    def _parse(self, data: Any, entities: Sequence[CandidateEntity]) -> list[dict[str, Any]] | None:
        scores = data.get("scores") if isinstance(data, dict) else None
        if not isinstance(scores, list):
            return None
        best: dict[int, dict[str, Any]] = {}
        for item in scores:
            if not isinstance(item, dict):
                continue
            try:
                idx = int(item.get("index"))
                relevance = float(item.get("relevance"))
            except (TypeError, ValueError):
                continue
            if not 0 <= idx < len(entities) or idx in best:
                continue
            best[idx] = {
                "key": entities[idx].key,
                "relevance": relevance,
                "reason": str(item.get("reason") or ""),
            }
        kept = [r for r in best.values() if r["relevance"] >= self.cutoff]
        kept.sort(key=lambda r: r["relevance"], reverse=True)
        log.info("Intelligence filter kept %d/%d entities (cutoff %d)", len(kept), len(entities), self.cutoff)
        return kept

    @staticmethod
    def _apply(entities: Sequence[CandidateEntity], ranked: list[dict[str, Any]]) -> list[CandidateEntity]:
        by_key = {e.key: e for e in entities}
        out = []
        for r in ranked:
            e = by_key.get(r.get("key"))
            if e is not None:
                out.append(replace(e, relevance=r.get("relevance"), relevance_reason=r.get("reason", "")))
        return out


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class SourceStage:
    """One data source in the chain. ``source`` returns at most *limit* entities."""

    name = "stage"
    only_when_empty = False

    async def source(self, ctx: SourcingContext, limit: int) -> list[CandidateEntity]:
        raise NotImplementedError


class EnrichedBatchStage(SourceStage):
    name = "enrichment_batch"

    def __init__(self, session_factory: sessionmaker[Session]):
        self._factory = session_factory

    async def source(self, ctx: SourcingContext, limit: int) -> list[CandidateEntity]:
        if not ctx.enrichment_batch_id:
            return []
        with self._factory() as session:
            rows = session.execute(
                select(CompanyProfile)
                .where(CompanyProfile.enrichment_batch_id == ctx.enrichment_batch_id)
                .order_by(CompanyProfile.data_completeness_score.desc(), CompanyProfile.id)
                .limit(limit)
            ).scalars().all()
            return [r.to_candidate(source=self.name) for r in rows]


def upsert_company(session: Session, entity: CandidateEntity) -> CompanyProfile:
    """Insert or refresh a company profile by name; returns the ORM row."""
    row = session.execute(
        select(CompanyProfile).where(func.lower(CompanyProfile.name) == entity.name.lower())
    ).scalar_one_or_none()
    if row is None:
        row = CompanyProfile(name=entity.name)
        session.add(row)
    row.sector = entity.sector or row.sector or ""
    row.size = entity.size or row.size or ""
    row.description = entity.description or row.description or ""
    row.website = entity.website or row.website or ""
    row.city = entity.city or row.city or ""
    row.zip = entity.zip or row.zip or ""
    if entity.inferred_needs:
        row.inferred_needs_json = json.dumps(list(entity.inferred_needs))
    if entity.job_postings:
        row.job_postings_json = json.dumps(list(entity.job_postings))
    if entity.technologies:
        row.technologies_json = json.dumps(list(entity.technologies))
    row.funding_stage = entity.funding_stage or row.funding_stage
    row.total_funding_usd = entity.total_funding_usd or row.total_funding_usd
    row.employee_count = entity.employee_count or row.employee_count
    row.contact_name = entity.contact_name or row.contact_name
    row.contact_title = entity.contact_title or row.contact_title
    row.contact_email = entity.contact_email or row.contact_email
    row.contact_phone = entity.contact_phone or row.contact_phone
    row.data_completeness_score = max(entity.data_completeness, row.data_completeness_score or 0)
    row.source = entity.source
    session.flush()
    return row


class DiscoveryStage(SourceStage):
    name = "discovery"

    def __init__(
        self,
        client: DiscoveryClient,
        session_factory: sessionmaker[Session] | None = None,
        delay: float = 0.0,
    ):
        self.client = client
        self._factory = session_factory
        self.delay = delay

    async def source(self, ctx: SourcingContext, limit: int) -> list[CandidateEntity]:
        if not self.client.is_configured:
            log.info("Discovery service not configured; skipping")
            return []
        try:
            found = await self.client.search(ctx.course.location, ctx.industries, limit)
        finally:
            if self.delay:
                await asyncio.sleep(self.delay)
        if not found or self._factory is None:
            return found
        persisted = []
        with self._factory.begin() as session:
            for entity in found:
                row = upsert_company(session, entity)
                persisted.append(replace(entity, profile_id=row.id))
        return persisted


def parse_location(location: str) -> tuple[str | None, str | None]:
    """Split a location descriptor into (zip, city)."""
    m = _ZIP_RE.search(location or "")
    if m:
        return m.group(1), None
    city = (location or "").split(",")[0].strip()
    return None, city or None


class LocalStoreStage(SourceStage):
    name = "local_store"

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        intelligence_filter: IntelligenceFilter,
        batch_size: int = 25,
    ):
        self._factory = session_factory
        self.filter = intelligence_filter
        self.batch_size = batch_size

    def _load(self, ctx: SourcingContext) -> list[CandidateEntity]:
        zip_code, city = parse_location(ctx.course.location)
        stmt = select(CompanyProfile)
        if zip_code:
            stmt = stmt.where(CompanyProfile.zip == zip_code)
        elif city:
            stmt = stmt.where(CompanyProfile.city.ilike(f"%{city}%"))
        if ctx.industries:
            stmt = stmt.where(func.lower(CompanyProfile.sector).in_([i.lower() for i in ctx.industries]))
        stmt = stmt.order_by(CompanyProfile.data_completeness_score.desc(), CompanyProfile.id).limit(self.batch_size)
        with self._factory() as session:
            rows = session.execute(stmt).scalars().all()
            return [r.to_candidate(source=self.name) for r in rows]

    async def source(self, ctx: SourcingContext, limit: int) -> list[CandidateEntity]:
        entities = self._load(ctx)
        if not entities:
            return []
        ranked = await self.filter.rank(ctx.course, entities)
        return ranked[:limit]


class GenerativeFallbackStage(SourceStage):
    name = "generated"
    only_when_empty = True

    def __init__(self, client: Any):
        self.client = client

    async def source(self, ctx: SourcingContext, limit: int) -> list[CandidateEntity]:
        if self.client is None:
            return []
        course = ctx.course
        user = "\n".join([
            f"LOCATION: {course.location}",
            f"INDUSTRIES: {', '.join(ctx.industries) or 'any'}",
            f"COURSE: {course.title} ({course.level})",
            "LEARNING OUTCOMES:",
            *(f"- {o}" for o in course.outcomes),
            "",
            f"Suggest {limit} organizations.",
        ])
        data = await self.client.call(FALLBACK_SYSTEM, user)
        orgs = data.get("organizations") if isinstance(data, dict) else data
        if not isinstance(orgs, list):
            return []
        out = []
        for org in orgs:
            if not isinstance(org, dict) or not str(org.get("name") or "").strip():
                continue
            out.append(CandidateEntity(
                name=str(org["name"]).strip(),
                sector=str(org.get("sector") or "").strip(),
                size=str(org.get("size") or "").strip(),
                description=str(org.get("description") or "").strip(),
                website=str(org.get("website") or "").strip(),
                inferred_needs=tuple(str_list(org.get("inferred_needs"))),
                source=self.name,
            ))
        log.warning("Using %d generated (unverified) organizations", len(out[:limit]))
        return out[:limit]


# ---------------------------------------------------------------------------
# Sourcer
# ---------------------------------------------------------------------------


class CandidateSourcer:
    def __init__(self, stages: Sequence[SourceStage]):
        self.stages = list(stages)

    async def source_candidates(
        self,
        course: Course,
        industries: Sequence[str],
        count: int,
        enrichment_batch_id: str | None = None,
    ) -> list[CandidateEntity]:
        """Return at most *count* de-duplicated candidates, earlier stages first."""
        ctx = SourcingContext(course, list(industries), count, enrichment_batch_id)
        sourced: list[CandidateEntity] = []
        seen: set[str] = set()

        for stage in self.stages:
            deficit = count - len(sourced)
            if deficit <= 0:
                break
            if stage.only_when_empty and sourced:
                continue
            try:
                found = await stage.source(ctx, deficit)
            except PipelineError as exc:
                log.warning("Sourcing stage %s failed (%s): %s", stage.name, exc.code, exc)
                continue
            added = 0
            for entity in found:
                name_key = entity.name.strip().casefold()
                if name_key in seen:
                    continue
                seen.add(name_key)
                sourced.append(entity)
                added += 1
                if len(sourced) >= count:
                    break
            log.info("Stage %s supplied %d candidate(s) (%d/%d)", stage.name, added, len(sourced), count)

        return sourced
