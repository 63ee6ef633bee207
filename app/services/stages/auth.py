"""Auth stage: authentication, authorization and session handling flaws."""

import logging

from app.schemas.findings import RawFinding, TriageResult
from app.services.inference import InferenceClient
from app.services.stages.utils import bound_code, parse_raw_findings, triage_context, with_line_numbers

logger = logging.getLogger(__name__)

CATEGORY = "auth"
ID_PREFIX = "auth"
AUTH_RISK_CATEGORIES = frozenset({"auth", "authn", "authz", "authorization", "session", "access_control"})

SYSTEM_PROMPT = """You are an application security specialist focused on authentication and authorization.
Look for missing or bypassable authentication, broken access control (IDOR, privilege escalation),
insecure session or token handling, and weak credential storage. Respond with ONLY a JSON array."""


def build_user_prompt(code: str, context: str) -> str:
    return f"""Triage context:
{context}

Code (line-numbered):
{with_line_numbers(code)}

Return a JSON array (empty if nothing is found) of objects with this shape:
[{{"id": "auth-1", "severity": "critical|high|medium|low", "title": "short title",
   "description": "what is wrong and how it can be abused",
   "location": {{"start_line": 1, "end_line": 1, "snippet": "offending code"}},
   "cwe_id": "CWE-287", "owasp_category": "A01:2021-Broken Access Control"}}]"""


def has_auth_surface(triage: TriageResult) -> bool:
    if not triage.mapped:
        return True
    return bool(triage.entry_points) or bool(triage.risk_areas_in(AUTH_RISK_CATEGORIES))


async def run_auth_stage(
    client: InferenceClient,
    code: str,
    triage: TriageResult,
    max_code_chars: int,
) -> list[RawFinding]:
    """Skipped (empty result) when triage found no entry points and no auth-related risk areas."""
    if not has_auth_surface(triage):
        logger.info("Auth stage skipped: no entry points or auth risk areas")
        return []
    context = triage_context(
        triage,
        include=("language", "framework", "entry_points", "risk_areas"),
        risk_categories=AUTH_RISK_CATEGORIES,
    )
    response = await client.generate(
        SYSTEM_PROMPT,
        build_user_prompt(bound_code(code, max_code_chars), context),
        task=CATEGORY,
    )
    return parse_raw_findings(response, category=CATEGORY, id_prefix=ID_PREFIX)
