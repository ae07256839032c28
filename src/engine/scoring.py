# src/engine/scoring.py
"""
Risk scoring for a normalized finding set.
"""
from typing import Dict, Iterable, Optional

from engine.records import Finding, RiskScore, Severity, SeverityCounts

SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 10,
    Severity.MEDIUM: 3,
    Severity.LOW: 1,
}

# upper bounds (exclusive) on the unclamped penalty, 2 * weighted total
GRADE_BANDS = [
    (20, "A"),
    (40, "B"),
    (60, "C"),
    (80, "D"),
]


def count_severities(findings: Iterable[Finding]) -> SeverityCounts:
    counts = SeverityCounts()
    for finding in findings:
        if finding.severity == Severity.CRITICAL:
            counts.critical += 1
        elif finding.severity == Severity.HIGH:
            counts.high += 1
        elif finding.severity == Severity.MEDIUM:
            counts.medium += 1
        else:
            counts.low += 1
    return counts


def weighted_total(counts: SeverityCounts) -> int:
    return (
        counts.critical * SEVERITY_WEIGHTS[Severity.CRITICAL]
        + counts.high * SEVERITY_WEIGHTS[Severity.HIGH]
        + counts.medium * SEVERITY_WEIGHTS[Severity.MEDIUM]
        + counts.low * SEVERITY_WEIGHTS[Severity.LOW]
    )


def grade_for(weighted: int) -> str:
    penalty = 2 * weighted
    for bound, grade in GRADE_BANDS:
        if penalty < bound:
            return grade
    return "F"


def score_counts(critical: int = 0, high: int = 0, medium: int = 0, low: int = 0) -> RiskScore:
    counts = SeverityCounts(critical=critical, high=high, medium=medium, low=low)
    if counts.total == 0:
        return RiskScore(score=100, grade="A", weighted_total=0, counts=counts)
    weighted = weighted_total(counts)
    score = max(0, min(100, 100 - 2 * weighted))
    return RiskScore(score=score, grade=grade_for(weighted), weighted_total=weighted, counts=counts)


def score_findings(findings: Iterable[Finding]) -> RiskScore:
    counts = count_severities(findings)
    return score_counts(counts.critical, counts.high, counts.medium, counts.low)


def trend(current: int, previous: Optional[int]) -> Dict[str, object]:
    """Classify a score change against the previous scan of the same target."""
    if previous is None:
        return {"trend": "initial", "change": 0}
    change = current - previous
    if change > 0:
        label = "improved"
    elif change < 0:
        label = "declined"
    else:
        label = "unchanged"
    return {"trend": label, "change": change}
