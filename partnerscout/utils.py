"""Shared utility functions used across partnerscout modules."""
from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any

_MISSING = object()

_FENCE_RE = re.compile(r"```(?:json)?\s*([\[{].*[\]}])\s*```", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def extract_json(text: str) -> Any:
    """Parse JSON out of an LLM reply that may wrap it in prose or code fences.

    Raises ``json.JSONDecodeError`` when nothing parseable is found.
    """
    text = (text or "").strip()
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        m = _OBJECT_RE.search(text)
        if not m:
            raise
        return json.loads(m.group(0))


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from SQLite."""
    return datetime.now(UTC).replace(tzinfo=None)


def str_list(value: Any, limit: int | None = None) -> list[str]:
    """Coerce an LLM/JSON value into a list of non-empty strings."""
    if not isinstance(value, list):
        return []
    items = [str(v).strip() for v in value if v is not None and str(v).strip()]
    return items[:limit] if limit is not None else items
