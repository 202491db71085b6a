"""Memo of intelligence-filter results keyed by course signature and candidate set.

Rows are upserted on ``cache_key`` so concurrent runs computing the same
result simply overwrite each other (last writer wins).
"""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from partnerscout.domain import CandidateEntity, Course
from partnerscout.models import FilterCacheEntry
from partnerscout.utils import json_parse, utcnow

log = logging.getLogger(__name__)


def cache_key(course: Course, candidates: Sequence[CandidateEntity]) -> str:
    """sha256 over the course signature and the sorted candidate keys."""
    payload = json.dumps(
        {"course": course.signature(), "candidates": sorted(c.key for c in candidates)},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class FilterCache:
    """SQL-backed cache of ranked ``[{"key", "relevance", "reason"}]`` lists."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        ttl_days: int = 7,
        now: Callable[[], datetime] = utcnow,
    ):
        self._factory = session_factory
        self.ttl = timedelta(days=ttl_days)
        self._now = now

    def get(self, key: str) -> list[dict[str, Any]] | None:
        with self._factory() as session:
            row = session.execute(
                select(FilterCacheEntry).where(FilterCacheEntry.cache_key == key)
            ).scalar_one_or_none()
            if row is None or row.expires_at <= self._now():
                return None
            data = json_parse(row.payload_json, None)
        if not isinstance(data, list):
            log.warning("Discarding malformed filter cache entry %s", key[:12])
            return None
        return data

    def put(self, key: str, ranked: list[dict[str, Any]]) -> None:
        now = self._now()
        values = {
            "cache_key": key,
            "payload_json": json.dumps(ranked),
            "created_at": now,
            "expires_at": now + self.ttl,
        }
        with self._factory.begin() as session:
            dialect = session.get_bind().dialect.name
            if dialect == "postgresql":
                stmt = postgresql.insert(FilterCacheEntry).values(**values)
            elif dialect == "sqlite":
                stmt = sqlite.insert(FilterCacheEntry).values(**values)
            else:
                self._put_generic(session, values)
                return
            stmt = stmt.on_conflict_do_update(
                index_elements=[FilterCacheEntry.cache_key],
                set_={
                    "payload_json": values["payload_json"],
                    "created_at": values["created_at"],
                    "expires_at": values["expires_at"],
                },
            )
            session.execute(stmt)

    @staticmethod
    def _put_generic(session: Session, values: dict[str, Any]) -> None:
        row = session.execute(
            select(FilterCacheEntry).where(FilterCacheEntry.cache_key == values["cache_key"])
        ).scalar_one_or_none()
        if row is None:
            session.add(FilterCacheEntry(**values))
        else:
            row.payload_json = values["payload_json"]
            row.created_at = values["created_at"]
            row.expires_at = values["expires_at"]

    def purge_expired(self) -> int:
        with self._factory.begin() as session:
            result = session.execute(
                delete(FilterCacheEntry).where(FilterCacheEntry.expires_at <= self._now())
            )
            removed = int(result.rowcount or 0)
        if removed:
            log.info("Purged %d expired filter cache entries", removed)
        return removed
