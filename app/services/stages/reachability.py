"""Reachability filter: decide which raw findings are exploitable from user input.

The model reasons over the whole finding set in one call so it can use cross-finding context.
Verdicts are then reconciled structurally against the inputs: every raw finding yields exactly one
Finding, reachable findings carry a data-flow path and unreachable findings carry a reason.
"""

import json
import logging

from pydantic import ValidationError

from app.schemas.findings import (
    DataFlowMap,
    DataFlowNode,
    Finding,
    RawFinding,
    ReachabilityVerdict,
)
from app.services.inference import InferenceClient, ResponseParseError, parse_json_response
from app.services.stages.utils import bound_code, with_line_numbers

logger = logging.getLogger(__name__)

DEFAULT_FALSE_POSITIVE_REASON = "Marked unreachable by reachability analysis without further explanation."

SYSTEM_PROMPT = """You are an expert in exploitability analysis. For each candidate vulnerability decide:
1. Is there a complete path from a user-controlled source to the vulnerable sink?
2. Does any sanitizer or validation on that path neutralize the threat?
3. Is the sink reachable during normal execution (not dead code, not test-only)?
A finding is reachable only if all three allow exploitation. Explain every unreachable verdict.
Respond with ONLY a JSON array containing one verdict per candidate, using the candidate's id."""


def build_user_prompt(code: str, raw_findings: list[RawFinding], data_flow_map: DataFlowMap) -> str:
    candidates = [
        {
            "id": f.id,
            "category": f.category,
            "severity": f.severity,
            "title": f.title,
            "description": f.description,
            "location": f.location.model_dump(),
        }
        for f in raw_findings
    ]
    return f"""Data flow map from triage:
{json.dumps(data_flow_map.model_dump(), indent=2)}

Candidate findings:
{json.dumps(candidates, indent=2)}

Code (line-numbered):
{with_line_numbers(code)}

Return a JSON array with exactly one object per candidate:
[{{"id": "<candidate id>", "is_reachable": true, "has_user_input_path": true,
   "data_flow_path": [{{"name": "req.query.id", "type": "source|propagator|sanitizer|sink", "description": "..."}}],
   "sanitizers_in_path": [{{"name": "escape()", "type": "encoding", "description": "...", "effective": false}}],
   "false_positive_reason": null}}]
Set "false_positive_reason" to a short explanation whenever "is_reachable" is false."""


def parse_verdicts(response: str) -> list[ReachabilityVerdict]:
    """Parse model verdicts; unusable output yields [] so every finding falls back to unverified."""
    try:
        parsed = parse_json_response(response)
    except ResponseParseError as e:
        logger.warning("Reachability parse error: %s", e.message)
        return []
    if isinstance(parsed, dict):
        parsed = parsed.get("verdicts") or parsed.get("findings") or []
    if not isinstance(parsed, list):
        logger.warning("Reachability output is not an array")
        return []
    verdicts: list[ReachabilityVerdict] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        try:
            verdicts.append(ReachabilityVerdict.model_validate(item))
        except ValidationError:
            logger.warning("Discarding malformed reachability verdict for id=%r", item.get("id"))
    return verdicts


def _sink_node(raw: RawFinding) -> DataFlowNode:
    return DataFlowNode(
        name=raw.location.snippet.strip() or f"line {raw.location.start_line}",
        type="sink",
        description=f"{raw.title} (lines {raw.location.start_line}-{raw.location.end_line})",
    )


def reconcile_findings(raw_findings: list[RawFinding], verdicts: list[ReachabilityVerdict]) -> list[Finding]:
    """
    Build exactly one Finding per raw finding, in input order.

    Verdicts are matched by id (first wins). A raw finding with no verdict stays reachable and
    unverified, with a single sink node built from its location. Reachable verdicts without a path
    get the same sink node; unreachable verdicts without a reason get a default reason and drop any path.
    """
    by_id: dict[str, ReachabilityVerdict] = {}
    for verdict in verdicts:
        if verdict.id and verdict.id not in by_id:
            by_id[verdict.id] = verdict

    findings: list[Finding] = []
    for raw in raw_findings:
        base = raw.model_dump()
        verdict = by_id.get(raw.id)
        if verdict is None:
            findings.append(Finding(**base, is_reachable=True, data_flow_path=[_sink_node(raw)]))
            continue
        if verdict.is_reachable:
            findings.append(
                Finding(
                    **base,
                    is_reachable=True,
                    has_user_input_path=verdict.has_user_input_path,
                    data_flow_path=verdict.data_flow_path or [_sink_node(raw)],
                    sanitizers_in_path=verdict.sanitizers_in_path,
                )
            )
        else:
            reason = (verdict.false_positive_reason or "").strip() or DEFAULT_FALSE_POSITIVE_REASON
            findings.append(
                Finding(
                    **base,
                    is_reachable=False,
                    has_user_input_path=verdict.has_user_input_path,
                    sanitizers_in_path=verdict.sanitizers_in_path,
                    false_positive_reason=reason,
                )
            )
    return findings


async def run_reachability_stage(
    client: InferenceClient,
    code: str,
    raw_findings: list[RawFinding],
    data_flow_map: DataFlowMap,
    review_id: str,
    max_code_chars: int,
) -> list[ReachabilityVerdict]:
    """One inference call over the full finding set. No call is made when there is nothing to filter."""
    if not raw_findings:
        return []
    response = await client.generate(
        SYSTEM_PROMPT,
        build_user_prompt(bound_code(code, max_code_chars), raw_findings, data_flow_map),
        task="reachability",
    )
    verdicts = parse_verdicts(response)
    logger.info(
        "Reachability verdicts parsed",
        extra={"review_id": review_id, "candidates": len(raw_findings), "verdicts": len(verdicts)},
    )
    return verdicts
