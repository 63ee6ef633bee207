"""Dependency stage: vulnerable, outdated or typosquatted packages referenced by the submission."""

from app.schemas.findings import RawFinding, TriageResult
from app.services.inference import InferenceClient
from app.services.stages.utils import bound_code, parse_raw_findings, triage_context, with_line_numbers

CATEGORY = "dependency"
ID_PREFIX = "dep"

SYSTEM_PROMPT = """You are a software supply-chain security specialist. Review imports, requires and
manifest content for packages with known vulnerabilities, abandoned or typosquatted packages, and
insecure version pinning. Report only issues tied to a concrete line. Respond with ONLY a JSON array."""


def build_user_prompt(code: str, context: str) -> str:
    return f"""Triage context:
{context}

Code (line-numbered):
{with_line_numbers(code)}

Return a JSON array (empty if nothing is found) of objects with this shape:
[{{"id": "dep-1", "severity": "critical|high|medium|low", "title": "short title",
   "description": "what is wrong and why it matters",
   "location": {{"start_line": 1, "end_line": 1, "snippet": "offending line"}},
   "cwe_id": "CWE-1104", "owasp_category": "A06:2021-Vulnerable and Outdated Components"}}]"""


async def run_dependency_stage(
    client: InferenceClient,
    code: str,
    triage: TriageResult,
    max_code_chars: int,
) -> list[RawFinding]:
    """Always runs: dependency references are not captured by the triage data-flow map."""
    context = triage_context(triage, include=("language", "framework", "code_type"))
    response = await client.generate(
        SYSTEM_PROMPT,
        build_user_prompt(bound_code(code, max_code_chars), context),
        task=CATEGORY,
    )
    return parse_raw_findings(response, category=CATEGORY, id_prefix=ID_PREFIX)
