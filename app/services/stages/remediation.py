"""Remediation stage: generate code fixes for approved, reachable findings."""

import difflib
import json
import logging
import re
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.schemas.findings import Finding
from app.schemas.pipeline import DiffHunk, Remediation
from app.services.inference import InferenceClient, ResponseParseError, parse_json_response
from app.services.stages.utils import bound_code, with_line_numbers

logger = logging.getLogger(__name__)

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")

SYSTEM_PROMPT = """You are a senior engineer writing minimal, correct security fixes.
For each approved finding produce the smallest change that removes the vulnerability without
altering unrelated behavior, and explain the fix in two or three sentences.
Respond with ONLY a JSON array, one object per finding."""


class RemediationDraft(BaseModel):
    """Model output for one finding before it is bound to a review."""

    model_config = ConfigDict(extra="ignore")

    finding_id: str = Field(..., min_length=1)
    original_code: str = ""
    fixed_code: str = Field(..., min_length=1)
    explanation: str = ""
    diff_hunks: list[DiffHunk] = Field(default_factory=list)


def remediation_id(finding_id: str) -> str:
    """Deterministic id so retried persistence of the same fix is a no-op."""
    return f"rem-{finding_id}"


def build_user_prompt(code: str, findings: list[Finding]) -> str:
    approved = [
        {
            "finding_id": f.id,
            "title": f.title,
            "severity": f.severity,
            "description": f.description,
            "location": f.location.model_dump(),
            "data_flow_path": [node.model_dump() for node in f.data_flow_path],
        }
        for f in findings
    ]
    return f"""Approved findings:
{json.dumps(approved, indent=2)}

Code (line-numbered):
{with_line_numbers(code)}

Return a JSON array with one object per approved finding:
[{{"finding_id": "<finding id>", "original_code": "vulnerable snippet", "fixed_code": "replacement snippet",
   "explanation": "why this fixes it",
   "diff_hunks": [{{"old_start": 1, "old_lines": 1, "new_start": 1, "new_lines": 1, "content": "-old\\n+new"}}]}}]"""


def compute_diff_hunks(original: str, fixed: str) -> list[DiffHunk]:
    """Derive unified-diff hunks between two snippets."""
    lines = list(
        difflib.unified_diff(
            original.splitlines(),
            fixed.splitlines(),
            lineterm="",
            n=1,
        )
    )
    hunks: list[DiffHunk] = []
    current: DiffHunk | None = None
    body: list[str] = []
    for line in lines[2:]:  # skip ---/+++ file headers
        match = _HUNK_HEADER_RE.match(line)
        if match:
            if current is not None:
                current.content = "\n".join(body)
                hunks.append(current)
            old_start, old_lines, new_start, new_lines = match.groups()
            current = DiffHunk(
                old_start=int(old_start),
                old_lines=int(old_lines) if old_lines is not None else 1,
                new_start=int(new_start),
                new_lines=int(new_lines) if new_lines is not None else 1,
            )
            body = []
        elif current is not None:
            body.append(line)
    if current is not None:
        current.content = "\n".join(body)
        hunks.append(current)
    return hunks


def parse_remediations(
    response: str,
    findings: list[Finding],
    review_id: str,
    created_at: datetime,
) -> list[Remediation]:
    """
    Bind model drafts to approved findings.

    Drafts naming an unknown finding are dropped; at most one remediation per finding (first wins).
    Unusable output yields [] rather than failing the pipeline.
    """
    try:
        parsed = parse_json_response(response)
    except ResponseParseError as e:
        logger.warning("Remediation parse error: %s", e.message, extra={"review_id": review_id})
        return []
    if isinstance(parsed, dict):
        parsed = parsed.get("remediations") or [parsed]
    if not isinstance(parsed, list):
        logger.warning("Remediation output is not an array", extra={"review_id": review_id})
        return []

    by_id = {f.id: f for f in findings}
    remediations: dict[str, Remediation] = {}
    for item in parsed:
        if not isinstance(item, dict):
            continue
        try:
            draft = RemediationDraft.model_validate(item)
        except ValidationError:
            logger.warning("Discarding malformed remediation", extra={"review_id": review_id})
            continue
        finding = by_id.get(draft.finding_id)
        if finding is None or draft.finding_id in remediations:
            continue
        original = draft.original_code or finding.location.snippet
        remediations[draft.finding_id] = Remediation(
            id=remediation_id(draft.finding_id),
            finding_id=draft.finding_id,
            review_id=review_id,
            original_code=original,
            fixed_code=draft.fixed_code,
            explanation=draft.explanation,
            diff_hunks=draft.diff_hunks or compute_diff_hunks(original, draft.fixed_code),
            created_at=created_at,
        )
    return list(remediations.values())


async def run_remediation_stage(
    client: InferenceClient,
    code: str,
    findings: list[Finding],
    review_id: str,
    max_code_chars: int,
) -> list[Remediation]:
    """One inference call covering every approved finding."""
    if not findings:
        return []
    response = await client.generate(
        SYSTEM_PROMPT,
        build_user_prompt(bound_code(code, max_code_chars), findings),
        task="remediation",
    )
    return parse_remediations(response, findings, review_id, datetime.now(UTC))
