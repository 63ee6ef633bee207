"""Injection stage: SQL/command/template injection, XSS, SSRF and path traversal along mapped data flows."""

import logging

from app.schemas.findings import RawFinding, TriageResult
from app.services.inference import InferenceClient
from app.services.stages.utils import bound_code, parse_raw_findings, triage_context, with_line_numbers

logger = logging.getLogger(__name__)

CATEGORY = "injection"
ID_PREFIX = "inj"
INJECTION_RISK_CATEGORIES = frozenset({"injection", "xss", "ssrf", "path_traversal"})

SYSTEM_PROMPT = """You are an application security specialist focused on injection flaws.
Trace user-controlled data into interpreters and sensitive operations: SQL, shell commands, templates,
HTML output, outbound URLs and file paths. Report the sink location. Respond with ONLY a JSON array."""


def build_user_prompt(code: str, context: str) -> str:
    return f"""Triage context (data flow map, entry points, injection risk areas):
{context}

Code (line-numbered):
{with_line_numbers(code)}

Return a JSON array (empty if nothing is found) of objects with this shape:
[{{"id": "inj-1", "severity": "critical|high|medium|low", "title": "short title",
   "description": "source, sink and why the flow is dangerous",
   "location": {{"start_line": 1, "end_line": 1, "snippet": "sink code"}},
   "cwe_id": "CWE-89", "owasp_category": "A03:2021-Injection"}}]"""


def has_injection_surface(triage: TriageResult) -> bool:
    if not triage.mapped:
        return True
    return (
        bool(triage.risk_areas_in(INJECTION_RISK_CATEGORIES))
        or bool(triage.data_flow_map.sinks)
        or bool(triage.entry_points)
    )


async def run_injection_stage(
    client: InferenceClient,
    code: str,
    triage: TriageResult,
    max_code_chars: int,
) -> list[RawFinding]:
    """Skipped (empty result) when triage found no injection risk areas, no sinks and no entry points."""
    if not has_injection_surface(triage):
        logger.info("Injection stage skipped: no sinks, entry points or injection risk areas")
        return []
    context = triage_context(
        triage,
        include=("data_flow_map", "entry_points", "risk_areas"),
        risk_categories=INJECTION_RISK_CATEGORIES,
    )
    response = await client.generate(
        SYSTEM_PROMPT,
        build_user_prompt(bound_code(code, max_code_chars), context),
        task=CATEGORY,
    )
    return parse_raw_findings(response, category=CATEGORY, id_prefix=ID_PREFIX)
