"""Client for the external company discovery/enrichment service.

All fields in the reply are best-effort; anything missing is treated as
unknown rather than an error.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Sequence

import httpx

from partnerscout.domain import CandidateEntity
from partnerscout.errors import DiscoveryError, PipelineError, backoff_delay, classify_exception
from partnerscout.utils import str_list

log = logging.getLogger(__name__)

_USER_AGENT = "PartnerScout/1.0"


class _RateLimiter:
    """Minimum spacing between discovery calls, widened after rate limits."""

    def __init__(self, min_delay: float = 0.3, max_delay: float = 30.0):
        self._lock = asyncio.Lock()
        self._min_delay = min_delay
        self._current_delay = min_delay
        self._max_delay = max_delay
        self._last_call: float = 0.0

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            wait = self._current_delay - (now - self._last_call)
            if wait > 0:
                log.debug("Discovery rate limiter: waiting %.1fs", wait)
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    def backoff(self) -> None:
        self._current_delay = min(max(self._current_delay, 0.5) * 2, self._max_delay)
        log.warning("Discovery rate limited, backing off to %.1fs between requests", self._current_delay)

    def reset(self) -> None:
        self._current_delay = self._min_delay


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").replace("$", ""))
    except (TypeError, ValueError):
        return None


def _job_postings(value: Any) -> tuple[dict[str, Any], ...]:
    if not isinstance(value, list):
        return ()
    out = []
    for item in value:
        if isinstance(item, dict) and item.get("title"):
            out.append({k: item[k] for k in ("title", "description", "department", "posted_date") if k in item})
        elif isinstance(item, str) and item.strip():
            out.append({"title": item.strip()})
    return tuple(out)


def organization_to_candidate(org: dict[str, Any]) -> CandidateEntity | None:
    name = str(org.get("name") or "").strip()
    if not name:
        return None
    contact = org.get("contact") if isinstance(org.get("contact"), dict) else {}
    completeness = org.get("data_completeness_score")
    return CandidateEntity(
        name=name,
        sector=str(org.get("sector") or org.get("industry") or "").strip(),
        size=str(org.get("size") or "").strip(),
        description=str(org.get("description") or "").strip(),
        website=str(org.get("website") or "").strip(),
        inferred_needs=tuple(str_list(org.get("inferred_needs"))),
        job_postings=_job_postings(org.get("job_postings")),
        technologies=tuple(str_list(org.get("technologies") or org.get("technologies_used"))),
        funding_stage=(str(org["funding_stage"]).strip() or None) if org.get("funding_stage") else None,
        total_funding_usd=_to_float(org.get("total_funding_usd")),
        employee_count=str(org["employee_count"]) if org.get("employee_count") else None,
        city=str(org.get("city") or "").strip(),
        zip=str(org.get("zip") or org.get("postal_code") or "").strip(),
        contact_name=str(contact.get("name") or "").strip() or None,
        contact_title=str(contact.get("title") or "").strip() or None,
        contact_email=str(contact.get("email") or "").strip() or None,
        contact_phone=str(contact.get("phone") or "").strip() or None,
        data_completeness=int(completeness) if isinstance(completeness, (int, float)) else 0,
        source="discovery",
    )


class DiscoveryClient:
    """POSTs ``{location, industries, limit}`` to ``{base_url}/companies/search``."""

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        timeout: float = 20.0,
        min_interval: float = 0.3,
        max_attempts: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self._limiter = _RateLimiter(min_delay=min_interval)
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def _post(self, payload: dict[str, Any]) -> Any:
        headers = {"User-Agent": _USER_AGENT}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout), headers=headers, transport=self._transport,
        ) as client:
            resp = await client.post(f"{self.base_url}/companies/search", json=payload)
            resp.raise_for_status()
            return resp.json()

    async def search(self, location: str, industries: Sequence[str], limit: int) -> list[CandidateEntity]:
        """Return up to *limit* organizations near *location*.

        Raises ``DiscoveryError`` (or a permanent error) once attempts are exhausted.
        """
        if not self.is_configured:
            return []
        payload = {"location": location, "industries": list(industries), "limit": limit}
        last: PipelineError | None = None
        for attempt in range(1, self.max_attempts + 1):
            await self._limiter.acquire()
            try:
                data = await self._post(payload)
            except Exception as exc:
                err = classify_exception(exc)
                if err.category == "rate_limit":
                    self._limiter.backoff()
                if not err.retryable:
                    raise err from exc
                last = err
                if attempt < self.max_attempts:
                    delay = backoff_delay(err, attempt, base=1.0, cap=10.0)
                    log.warning("Discovery attempt %d/%d failed (%s), retrying in %.1fs",
                                attempt, self.max_attempts, err.code, delay)
                    await asyncio.sleep(delay)
                continue
            self._limiter.reset()
            orgs = data.get("organizations") if isinstance(data, dict) else data
            if not isinstance(orgs, list):
                raise DiscoveryError("Discovery reply has no organizations list")
            found = [c for c in (organization_to_candidate(o) for o in orgs if isinstance(o, dict)) if c]
            log.info("Discovery returned %d organizations near %s", len(found), location)
            return found[:limit]
        raise DiscoveryError(f"Discovery failed after {self.max_attempts} attempts: {last}")
