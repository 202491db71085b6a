"""Detailed learning-outcome to task/deliverable mapping.

Advisory only: ``map_alignment`` returns ``None`` on any failure so the
proposal can still be persisted without it.
"""
from __future__ import annotations

import logging
from typing import Any, Sequence

from partnerscout.errors import PipelineError

log = logging.getLogger(__name__)

GAP_THRESHOLD = 60

ALIGNMENT_MAP_SYSTEM = """\
You are a learning outcomes assessment expert. Map project activities to
course learning outcomes using ONLY the numeric indices given in the prompt.

Respond with ONLY valid JSON:
{
  "outcome_mappings": [
    {"outcome_id": "0", "coverage_percentage": 75, "aligned_tasks": [0, 2],
     "aligned_deliverables": [1], "explanation": "..."}
  ],
  "task_mappings": [{"task_id": 0, "primary_outcome": "0", "secondary_outcomes": ["1"]}],
  "deliverable_mappings": [{"deliverable_id": 0, "primary_outcome": "0", "supporting_tasks": [0, 1]}],
  "gaps": ["..."]
}
"""


def _indices(value: Any, size: int) -> list[int]:
    if not isinstance(value, list):
        return []
    out: list[int] = []
    for v in value:
        try:
            i = int(v)
        except (TypeError, ValueError):
            continue
        if 0 <= i < size and i not in out:
            out.append(i)
    return out


def _items(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _coverage(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(min(100, max(0, value)))


def normalize_mapping(
    raw: Any,
    tasks: Sequence[str],
    deliverables: Sequence[str],
    outcomes: Sequence[str],
) -> dict[str, Any] | None:
    """Clamp indices and coverage to valid ranges and attach the source texts."""
    if not isinstance(raw, dict) or not isinstance(raw.get("outcome_mappings"), list):
        return None

    by_outcome: dict[int, dict[str, Any]] = {}
    for item in raw["outcome_mappings"]:
        if not isinstance(item, dict):
            continue
        idx = _indices([item.get("outcome_id")], len(outcomes))
        if not idx or idx[0] in by_outcome:
            continue
        by_outcome[idx[0]] = {
            "outcome_id": str(idx[0]),
            "outcome_text": outcomes[idx[0]],
            "coverage_percentage": _coverage(item.get("coverage_percentage")),
            "aligned_tasks": _indices(item.get("aligned_tasks"), len(tasks)),
            "aligned_deliverables": _indices(item.get("aligned_deliverables"), len(deliverables)),
            "explanation": str(item.get("explanation") or ""),
        }
    if not by_outcome:
        return None

    outcome_mappings = [
        by_outcome.get(i) or {
            "outcome_id": str(i),
            "outcome_text": text,
            "coverage_percentage": 0.0,
            "aligned_tasks": [],
            "aligned_deliverables": [],
            "explanation": "",
        }
        for i, text in enumerate(outcomes)
    ]

    task_mappings = []
    for item in _items(raw.get("task_mappings")):
        if not isinstance(item, dict):
            continue
        idx = _indices([item.get("task_id")], len(tasks))
        if idx:
            task_mappings.append({
                "task_id": idx[0],
                "task_text": tasks[idx[0]],
                "primary_outcome": str(item.get("primary_outcome") or ""),
                "secondary_outcomes": [str(o) for o in _items(item.get("secondary_outcomes"))],
            })

    deliverable_mappings = []
    for item in _items(raw.get("deliverable_mappings")):
        if not isinstance(item, dict):
            continue
        idx = _indices([item.get("deliverable_id")], len(deliverables))
        if idx:
            deliverable_mappings.append({
                "deliverable_id": idx[0],
                "deliverable_text": deliverables[idx[0]],
                "primary_outcome": str(item.get("primary_outcome") or ""),
                "supporting_tasks": _indices(item.get("supporting_tasks"), len(tasks)),
            })

    gaps = [str(g) for g in _items(raw.get("gaps")) if str(g).strip()]
    if not gaps:
        gaps = [
            f"Outcome {m['outcome_id']} ({m['outcome_text']}) is only {m['coverage_percentage']:.0f}% covered"
            for m in outcome_mappings
            if m["coverage_percentage"] < GAP_THRESHOLD
        ]

    overall = sum(m["coverage_percentage"] for m in outcome_mappings) / len(outcome_mappings)
    return {
        "outcome_mappings": outcome_mappings,
        "task_mappings": task_mappings,
        "deliverable_mappings": deliverable_mappings,
        "overall_coverage": round(overall, 1),
        "gaps": gaps,
    }


async def map_alignment(
    client: Any,
    tasks: Sequence[str],
    deliverables: Sequence[str],
    outcomes: Sequence[str],
    summary: str = "",
) -> dict[str, Any] | None:
    if client is None or not outcomes or not tasks:
        return None
    user = "\n".join([
        "LEARNING OUTCOMES:",
        *(f"{i}: {o}" for i, o in enumerate(outcomes)),
        "",
        f"PROJECT TASKS (total: {len(tasks)}):",
        *(f"{i}: {t}" for i, t in enumerate(tasks)),
        "",
        f"PROJECT DELIVERABLES (total: {len(deliverables)}):",
        *(f"{i}: {d}" for i, d in enumerate(deliverables)),
        "",
        f"SUMMARY: {summary}",
    ])
    try:
        raw = await client.call(ALIGNMENT_MAP_SYSTEM, user)
        mapping = normalize_mapping(raw, tasks, deliverables, outcomes)
    except PipelineError as exc:
        log.warning("Alignment mapping unavailable: %s", exc)
        return None
    except Exception as exc:
        log.warning("Alignment mapping failed (%s): %s", type(exc).__name__, exc)
        return None

    if mapping is None:
        log.warning("Alignment mapping reply had no usable outcome mappings")
    return mapping
