"""Analysis stages: one inference-backed task per module, plus deterministic filtering and synthesis."""

from app.services.stages.auth import run_auth_stage
from app.services.stages.dependency import run_dependency_stage
from app.services.stages.injection import run_injection_stage
from app.services.stages.reachability import reconcile_findings, run_reachability_stage
from app.services.stages.remediation import run_remediation_stage
from app.services.stages.secrets import run_secrets_stage
from app.services.stages.synthesis import noise_reduction_percent, synthesize
from app.services.stages.triage import run_triage_stage

__all__ = [
    "noise_reduction_percent",
    "reconcile_findings",
    "run_auth_stage",
    "run_dependency_stage",
    "run_injection_stage",
    "run_reachability_stage",
    "run_remediation_stage",
    "run_secrets_stage",
    "run_triage_stage",
    "synthesize",
]
