"""Shared helpers for analysis stages: prompt bounding, context pruning, and untrusted-output parsing."""

import json
import logging
from typing import Any

from pydantic import ValidationError

from app.schemas.findings import RawFinding, TriageResult
from app.services.inference import ResponseParseError, parse_json_response

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n# ... [truncated] ..."

# Keys a model may wrap its finding array in despite being asked for a bare array.
_ARRAY_WRAPPER_KEYS = ("findings", "vulnerabilities", "results", "items")


def bound_code(code: str, max_chars: int) -> str:
    """Truncate code to max_chars so every prompt stays within a fixed budget."""
    if len(code) <= max_chars:
        return code
    return code[:max_chars] + TRUNCATION_MARKER


def with_line_numbers(code: str) -> str:
    """Prefix each line with its 1-based number so the model can cite locations."""
    return "\n".join(f"{i:>5} | {line}" for i, line in enumerate(code.split("\n"), start=1))


def triage_context(triage: TriageResult, include: tuple[str, ...], risk_categories: frozenset[str] | None = None) -> str:
    """
    Serialize a pruned slice of triage output for a downstream prompt.

    include names TriageResult fields to keep; risk_categories, when given, narrows risk_areas.
    """
    data = triage.model_dump(include=set(include))
    if risk_categories is not None and "risk_areas" in include:
        data["risk_areas"] = [area.model_dump() for area in triage.risk_areas_in(risk_categories)]
    return json.dumps(data, indent=2)


def _unwrap_array(parsed: Any) -> list | None:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in _ARRAY_WRAPPER_KEYS:
            value = parsed.get(key)
            if isinstance(value, list):
                return value
    return None


def parse_raw_findings(response: str, category: str, id_prefix: str) -> list[RawFinding]:
    """
    Parse one analysis task's output into RawFindings.

    Category is forced to the task's category. Missing or duplicate ids get a task-scoped id.
    Any parse or structural failure discards the whole task output (returns []).
    """
    try:
        parsed = parse_json_response(response)
    except ResponseParseError as e:
        logger.warning("%s stage parse error: %s", category, e.message)
        return []

    items = _unwrap_array(parsed)
    if items is None:
        logger.warning("%s stage returned %s instead of an array", category, type(parsed).__name__)
        return []

    findings: list[RawFinding] = []
    seen_ids: set[str] = set()
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning("%s stage item %d is not an object; discarding task output", category, index)
            return []
        try:
            finding = RawFinding.model_validate({**item, "category": category})
        except ValidationError as e:
            logger.warning(
                "%s stage item %d failed validation; discarding task output",
                category,
                index,
                extra={"errors": e.error_count()},
            )
            return []
        if not finding.id or finding.id in seen_ids:
            candidate = f"{id_prefix}-{index}"
            suffix = 1
            while candidate in seen_ids:
                suffix += 1
                candidate = f"{id_prefix}-{index}-{suffix}"
            finding.id = candidate
        seen_ids.add(finding.id)
        findings.append(finding)
    return findings
