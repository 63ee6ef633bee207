"""Triage stage: map entry points, data flow and risk areas so specialist stages can prune their work."""

import logging

from pydantic import ValidationError

from app.schemas.findings import TriageResult
from app.services.inference import InferenceClient, ResponseParseError, parse_json_response
from app.services.stages.utils import bound_code, with_line_numbers

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a senior application security engineer performing triage on a code submission.
Identify the language and framework, every externally reachable entry point, the data flow from
user-controlled sources to sensitive sinks, and the areas that deserve specialist review.
Respond with ONLY a JSON object. Do not report vulnerabilities yet."""


def build_user_prompt(code: str, language: str) -> str:
    return f"""Declared language: {language}

Code (line-numbered):
{with_line_numbers(code)}

Return a JSON object with exactly this shape:
{{
  "language": "detected language",
  "framework": "framework name or null",
  "code_type": "api|web|cli|library|script|other",
  "entry_points": [{{"name": "handler or route", "type": "http|cli|queue|other", "line": 1}}],
  "data_flow_map": {{
    "sources": [{{"name": "req.query.id", "line": 1}}],
    "sinks": [{{"name": "db.query", "line": 2}}],
    "flows": [{{"source": "req.query.id", "sink": "db.query"}}]
  }},
  "risk_areas": [{{"category": "injection|xss|ssrf|path_traversal|auth|authz|session|secrets|dependency", "description": "why", "lines": [1]}}]
}}"""


async def run_triage_stage(client: InferenceClient, code: str, language: str, max_code_chars: int) -> TriageResult:
    """
    Produce the structured data-flow map for a submission.

    An unparsable response degrades to an unmapped result: specialist stages then run
    unconditionally instead of skipping, and the pipeline continues.
    """
    response = await client.generate(
        SYSTEM_PROMPT,
        build_user_prompt(bound_code(code, max_code_chars), language),
        task="triage",
    )
    try:
        parsed = parse_json_response(response)
        if not isinstance(parsed, dict):
            raise ResponseParseError(f"expected an object, got {type(parsed).__name__}")
        parsed.pop("mapped", None)
        return TriageResult.model_validate(parsed)
    except (ResponseParseError, ValidationError) as e:
        logger.warning("Triage stage parse error: %s", e)
        return TriageResult(language=language if language != "auto" else "unknown", mapped=False)
