"""Analysis capability consumed by the pipeline: one method per analysis task.

The orchestrator only depends on the AnalysisService protocol, so it can run against a
deterministic stub in tests and against the Ollama-backed implementation in production.
"""

from typing import TYPE_CHECKING, Protocol

from app.schemas.findings import DataFlowMap, Finding, RawFinding, ReachabilityVerdict, TriageResult
from app.schemas.pipeline import Remediation
from app.services.inference import InferenceClient
from app.services.stages import (
    run_auth_stage,
    run_dependency_stage,
    run_injection_stage,
    run_reachability_stage,
    run_remediation_stage,
    run_secrets_stage,
    run_triage_stage,
)

if TYPE_CHECKING:
    from app.core.config import Settings


class AnalysisService(Protocol):
    async def triage(self, code: str, language: str) -> TriageResult: ...

    async def dependency(self, code: str, triage: TriageResult) -> list[RawFinding]: ...

    async def auth(self, code: str, triage: TriageResult) -> list[RawFinding]: ...

    async def injection(self, code: str, triage: TriageResult) -> list[RawFinding]: ...

    async def secrets(self, code: str, triage: TriageResult) -> list[RawFinding]: ...

    async def reachability(
        self,
        code: str,
        raw_findings: list[RawFinding],
        data_flow_map: DataFlowMap,
        review_id: str,
    ) -> list[ReachabilityVerdict]: ...

    async def remediate(self, code: str, findings: list[Finding], review_id: str) -> list[Remediation]: ...


class OllamaAnalysisService:
    """AnalysisService backed by the local LLM; each method issues at most one inference call."""

    def __init__(self, settings: "Settings", client: InferenceClient | None = None) -> None:
        self._client = client or InferenceClient(settings)
        self._max_code_chars = settings.PIPELINE_MAX_CODE_CHARS

    async def triage(self, code: str, language: str) -> TriageResult:
        return await run_triage_stage(self._client, code, language, self._max_code_chars)

    async def dependency(self, code: str, triage: TriageResult) -> list[RawFinding]:
        return await run_dependency_stage(self._client, code, triage, self._max_code_chars)

    async def auth(self, code: str, triage: TriageResult) -> list[RawFinding]:
        return await run_auth_stage(self._client, code, triage, self._max_code_chars)

    async def injection(self, code: str, triage: TriageResult) -> list[RawFinding]:
        return await run_injection_stage(self._client, code, triage, self._max_code_chars)

    async def secrets(self, code: str, triage: TriageResult) -> list[RawFinding]:
        return await run_secrets_stage(self._client, code, self._max_code_chars)

    async def reachability(
        self,
        code: str,
        raw_findings: list[RawFinding],
        data_flow_map: DataFlowMap,
        review_id: str,
    ) -> list[ReachabilityVerdict]:
        return await run_reachability_stage(
            self._client, code, raw_findings, data_flow_map, review_id, self._max_code_chars
        )

    async def remediate(self, code: str, findings: list[Finding], review_id: str) -> list[Remediation]:
        return await run_remediation_stage(self._client, code, findings, review_id, self._max_code_chars)
