"""Pydantic schemas for findings: triage output, raw findings from analysis tasks, and reachability-annotated findings."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

FindingCategory = Literal["dependency", "auth", "injection", "secrets"]

FINDING_CATEGORIES: frozenset[str] = frozenset({"dependency", "auth", "injection", "secrets"})

# Rank used to order findings for readers; anything unlisted sorts last.
SEVERITY_RANK: dict[str, int] = {
    "critical": 1,
    "high": 2,
    "medium": 3,
    "low": 4,
}
UNKNOWN_SEVERITY_RANK = 5


def severity_rank(severity: str | None) -> int:
    """Return the reader ordering rank for a severity (critical=1 ... unknown=5)."""
    if not severity:
        return UNKNOWN_SEVERITY_RANK
    return SEVERITY_RANK.get(severity.strip().lower(), UNKNOWN_SEVERITY_RANK)


class EntryPoint(BaseModel):
    """Externally reachable entry point identified by triage (route, handler, CLI arg)."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    type: str = ""
    line: int | None = None


class DataFlowMap(BaseModel):
    """Sources, sinks and flows between them as mapped by triage."""

    model_config = ConfigDict(extra="ignore")

    sources: list[dict] = Field(default_factory=list)
    sinks: list[dict] = Field(default_factory=list)
    flows: list[dict] = Field(default_factory=list)


class RiskArea(BaseModel):
    """Area of the code triage considers worth a specialist look."""

    model_config = ConfigDict(extra="ignore")

    category: str = ""
    description: str = ""
    lines: list[int] = Field(default_factory=list)

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v: object) -> str:
        return str(v or "").strip().lower()


class TriageResult(BaseModel):
    """Structured map of the submission produced by the triage stage."""

    model_config = ConfigDict(extra="ignore")

    language: str = "unknown"
    framework: str | None = None
    code_type: str | None = None
    entry_points: list[EntryPoint] = Field(default_factory=list)
    data_flow_map: DataFlowMap = Field(default_factory=DataFlowMap)
    risk_areas: list[RiskArea] = Field(default_factory=list)
    # False when triage output was unusable; specialist stages then run without skipping.
    mapped: bool = True

    def risk_areas_in(self, categories: frozenset[str]) -> list[RiskArea]:
        return [area for area in self.risk_areas if area.category in categories]


class Location(BaseModel):
    """Source location of a finding within the submitted code."""

    model_config = ConfigDict(extra="ignore")

    start_line: int = Field(default=0, ge=0)
    end_line: int = Field(default=0, ge=0)
    snippet: str = ""

    @model_validator(mode="after")
    def end_not_before_start(self) -> "Location":
        if self.end_line < self.start_line:
            self.end_line = self.start_line
        return self


class RawFinding(BaseModel):
    """Unfiltered candidate vulnerability emitted by one analysis task."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default="", description="Task-scoped id; made globally unique at fan-in.")
    category: FindingCategory
    severity: str = Field(default="medium", description="critical, high, medium, low, info (others rank unknown).")
    title: str = Field(..., min_length=1)
    description: str = ""
    location: Location = Field(default_factory=Location)
    cwe_id: str | None = None
    owasp_category: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: object) -> str:
        normalized = str(v or "").strip().lower()
        return normalized or "unknown"

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: object) -> str:
        return "" if v is None else str(v).strip()


class DataFlowNode(BaseModel):
    """One hop of a source-to-sink path."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    type: str = "propagator"
    description: str = ""


class Sanitizer(BaseModel):
    """Sanitizer observed on a data-flow path and whether it neutralizes the threat."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    type: str = ""
    description: str = ""
    effective: bool = True


class ReachabilityVerdict(BaseModel):
    """Model verdict for one raw finding, matched back to its input by id."""

    model_config = ConfigDict(extra="ignore")

    id: str
    is_reachable: bool = True
    has_user_input_path: bool = False
    data_flow_path: list[DataFlowNode] = Field(default_factory=list)
    sanitizers_in_path: list[Sanitizer] = Field(default_factory=list)
    false_positive_reason: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: object) -> str:
        return "" if v is None else str(v).strip()


class Finding(RawFinding):
    """
    Raw finding annotated with a reachability verdict.

    Invariants: false_positive_reason is set iff not reachable; data_flow_path is non-empty iff reachable.
    """

    is_reachable: bool
    has_user_input_path: bool = False
    data_flow_path: list[DataFlowNode] = Field(default_factory=list)
    sanitizers_in_path: list[Sanitizer] = Field(default_factory=list)
    false_positive_reason: str | None = None
    approved: bool = False
    approved_at: datetime | None = None

    @model_validator(mode="after")
    def check_reachability_invariants(self) -> "Finding":
        has_reason = bool(self.false_positive_reason and self.false_positive_reason.strip())
        if self.is_reachable:
            if has_reason:
                raise ValueError("reachable finding must not carry a false_positive_reason")
            if not self.data_flow_path:
                raise ValueError("reachable finding must carry a non-empty data_flow_path")
        else:
            if not has_reason:
                raise ValueError("unreachable finding must carry a false_positive_reason")
            if self.data_flow_path:
                raise ValueError("unreachable finding must not carry a data_flow_path")
        return self
