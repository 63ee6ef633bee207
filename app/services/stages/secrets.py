"""Secrets stage: hard-coded credentials, keys and tokens."""

from app.schemas.findings import RawFinding
from app.services.inference import InferenceClient
from app.services.stages.utils import bound_code, parse_raw_findings, with_line_numbers

CATEGORY = "secrets"
ID_PREFIX = "sec"

SYSTEM_PROMPT = """You are a security specialist hunting for hard-coded secrets: API keys, passwords,
private keys, tokens and connection strings with embedded credentials. Ignore obvious placeholders
and values read from the environment. Respond with ONLY a JSON array."""


def build_user_prompt(code: str) -> str:
    return f"""Code (line-numbered):
{with_line_numbers(code)}

Return a JSON array (empty if nothing is found) of objects with this shape:
[{{"id": "sec-1", "severity": "critical|high|medium|low", "title": "short title",
   "description": "what kind of secret and its exposure",
   "location": {{"start_line": 1, "end_line": 1, "snippet": "line with the secret redacted"}},
   "cwe_id": "CWE-798", "owasp_category": "A07:2021-Identification and Authentication Failures"}}]"""


async def run_secrets_stage(client: InferenceClient, code: str, max_code_chars: int) -> list[RawFinding]:
    """Runs on the code alone; triage context does not narrow a secrets scan."""
    response = await client.generate(
        SYSTEM_PROMPT,
        build_user_prompt(bound_code(code, max_code_chars)),
        task=CATEGORY,
    )
    return parse_raw_findings(response, category=CATEGORY, id_prefix=ID_PREFIX)
