"""Shared test fixtures: throwaway SQLite store, fast settings and a deterministic analysis stub."""

import asyncio
import tempfile
from datetime import UTC, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.models import Base
from app.schemas.findings import (
    DataFlowMap,
    DataFlowNode,
    EntryPoint,
    Finding,
    Location,
    RawFinding,
    ReachabilityVerdict,
    TriageResult,
)
from app.schemas.pipeline import Remediation


# Kept alive for the whole test session; removed at interpreter exit.
_scratch_dirs: list[tempfile.TemporaryDirectory] = []


def make_session_factory() -> sessionmaker:
    """
    A fresh SQLite file database with all tables created.

    A file rather than an in-memory database so store calls made from worker threads each
    get their own connection.
    """
    scratch = tempfile.TemporaryDirectory(prefix="secpipe-test-")
    _scratch_dirs.append(scratch)
    engine = create_engine(
        f"sqlite:///{scratch.name}/secpipe.db",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "DATABASE_URL": "sqlite://",
        "PIPELINE_STAGE_RETRIES": 2,
        "PIPELINE_RETRY_DELAY_SEC": 0.0,
        "PIPELINE_STAGE_TIMEOUT_SEC": 5.0,
        "PIPELINE_LONG_STAGE_TIMEOUT_SEC": 5.0,
        "APPROVAL_TIMEOUT_HOURS": 1.0,
        "APPROVAL_POLL_INTERVAL_SEC": 0.05,
        "PIPELINE_RESUME_ON_STARTUP": False,
    }
    values.update(overrides)
    return Settings(**values)


def raw(
    finding_id: str,
    category: str = "injection",
    severity: str = "high",
    title: str | None = None,
    line: int = 1,
) -> RawFinding:
    return RawFinding(
        id=finding_id,
        category=category,
        severity=severity,
        title=title or f"{category} issue {finding_id}",
        description="test finding",
        location=Location(start_line=line, end_line=line, snippet="query(user_input)"),
        cwe_id="CWE-89",
    )


def reachable_finding(finding_id: str, severity: str = "high", **kwargs: object) -> Finding:
    base = raw(finding_id, severity=severity, **kwargs).model_dump()
    return Finding(
        **base,
        is_reachable=True,
        has_user_input_path=True,
        data_flow_path=[DataFlowNode(name="request.args", type="source"), DataFlowNode(name="cursor.execute", type="sink")],
    )


def unreachable_finding(finding_id: str, severity: str = "low", **kwargs: object) -> Finding:
    base = raw(finding_id, severity=severity, **kwargs).model_dump()
    return Finding(**base, is_reachable=False, false_positive_reason="constant input only")


class StubAnalysis:
    """
    Deterministic AnalysisService.

    per_task maps task name to the raw findings it returns; verdicts default to reachable for
    every id except those listed in unreachable. failures maps a task to the number of calls
    that raise before it succeeds (a large number means it never succeeds). gates maps a task to an
    asyncio.Event the task waits on before returning.
    """

    def __init__(
        self,
        per_task: dict[str, list[RawFinding]] | None = None,
        unreachable: set[str] | None = None,
        failures: dict[str, int] | None = None,
        triage_result: TriageResult | None = None,
    ) -> None:
        self.per_task = per_task or {}
        self.unreachable = unreachable or set()
        self.failures = dict(failures or {})
        self.triage_result = triage_result or TriageResult(
            language="python",
            entry_points=[EntryPoint(name="GET /users", type="route", line=1)],
        )
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: dict[str, int] = {}
        self.remediated: list[list[str]] = []

    def _record(self, task: str) -> None:
        self.calls[task] = self.calls.get(task, 0) + 1
        remaining = self.failures.get(task, 0)
        if remaining > 0:
            self.failures[task] = remaining - 1
            raise RuntimeError(f"{task} backend unavailable")

    async def triage(self, code: str, language: str) -> TriageResult:
        self._record("triage")
        return self.triage_result

    async def _task(self, name: str) -> list[RawFinding]:
        self._record(name)
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        await asyncio.sleep(0)
        return list(self.per_task.get(name, []))

    async def dependency(self, code: str, triage: TriageResult) -> list[RawFinding]:
        return await self._task("dependency")

    async def auth(self, code: str, triage: TriageResult) -> list[RawFinding]:
        return await self._task("auth")

    async def injection(self, code: str, triage: TriageResult) -> list[RawFinding]:
        return await self._task("injection")

    async def secrets(self, code: str, triage: TriageResult) -> list[RawFinding]:
        return await self._task("secrets")

    async def reachability(
        self,
        code: str,
        raw_findings: list[RawFinding],
        data_flow_map: DataFlowMap,
        review_id: str,
    ) -> list[ReachabilityVerdict]:
        self._record("reachability")
        verdicts = []
        for finding in raw_findings:
            local_id = finding.id.split(":", 1)[-1]
            if local_id in self.unreachable:
                verdicts.append(
                    ReachabilityVerdict(id=finding.id, is_reachable=False, false_positive_reason="not user controlled")
                )
            else:
                verdicts.append(
                    ReachabilityVerdict(
                        id=finding.id,
                        is_reachable=True,
                        has_user_input_path=True,
                        data_flow_path=[DataFlowNode(name="request.args", type="source"), DataFlowNode(name="sink", type="sink")],
                    )
                )
        return verdicts

    async def remediate(self, code: str, findings: list[Finding], review_id: str) -> list[Remediation]:
        self._record("remediation")
        self.remediated.append([f.id for f in findings])
        now = datetime.now(UTC)
        return [
            Remediation(
                id=f"rem-{f.id}",
                finding_id=f.id,
                review_id=review_id,
                original_code=f.location.snippet,
                fixed_code="query(sanitize(user_input))",
                explanation="Parameterize the query.",
                created_at=now,
            )
            for f in findings
        ]
