"""Synthesis: deduplicate filtered findings and compute noise-reduction statistics. Pure arithmetic, no model call."""

from collections import Counter

from app.schemas.findings import Finding, severity_rank
from app.schemas.pipeline import SynthesisResult


def noise_reduction_percent(total_raw: int, reachable: int) -> float:
    """(raw - reachable) / raw * 100, rounded to 2 decimals; 0 when there were no raw findings."""
    if total_raw <= 0:
        return 0.0
    reachable = max(0, min(reachable, total_raw))
    return round((total_raw - reachable) / total_raw * 100, 2)


def deduplicate_findings(findings: list[Finding]) -> list[Finding]:
    """
    Drop findings repeating (category, title, start line), keeping order.

    The first occurrence wins unless it is unreachable and a later duplicate is reachable;
    the reachable one then takes its place.
    """
    index: dict[tuple[str, str, int], int] = {}
    unique: list[Finding] = []
    for finding in findings:
        key = (finding.category, finding.title.strip().lower(), finding.location.start_line)
        if key not in index:
            index[key] = len(unique)
            unique.append(finding)
        elif finding.is_reachable and not unique[index[key]].is_reachable:
            unique[index[key]] = finding
    return unique


def _summary(total_raw: int, reachable: list[Finding], pct: float) -> str:
    if total_raw == 0:
        return "No candidate vulnerabilities were reported by the analysis stages."
    if not reachable:
        return (
            f"{total_raw} candidate findings were reported and none is reachable from user input "
            f"({pct:.1f}% noise reduction)."
        )
    worst = min(reachable, key=lambda f: severity_rank(f.severity))
    return (
        f"{len(reachable)} of {total_raw} candidate findings are reachable from user input "
        f"({pct:.1f}% noise reduction). Most severe: {worst.title} ({worst.severity})."
    )


def synthesize(total_raw: int, findings: list[Finding]) -> tuple[SynthesisResult, list[Finding]]:
    """
    Aggregate filtered findings into statistics.

    Returns the synthesis result and the deduplicated finding list that should be persisted.
    Numeric fields depend only on the inputs.
    """
    unique = deduplicate_findings(findings)
    reachable = [f for f in unique if f.is_reachable]
    pct = noise_reduction_percent(total_raw, len(reachable))
    breakdown = Counter(f.severity for f in reachable)
    result = SynthesisResult(
        total_raw=total_raw,
        reachable_count=len(reachable),
        filtered_out_count=max(0, total_raw - len(reachable)),
        noise_reduction_percent=pct,
        severity_breakdown=dict(sorted(breakdown.items(), key=lambda item: severity_rank(item[0]))),
        summary=_summary(total_raw, reachable, pct),
    )
    return result, unique
