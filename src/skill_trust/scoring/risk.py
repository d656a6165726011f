from __future__ import annotations

from collections.abc import Iterable

from skill_trust.config import ScoringPolicy
from skill_trust.models.findings import Finding, Severity
from skill_trust.models.reports import RiskLevel, SeveritySummary

MAX_SCORE = 100


def summarize(findings: Iterable[Finding]) -> SeveritySummary:
    counts = {severity.value: 0 for severity in Severity}
    for finding in findings:
        counts[finding.severity.value] += 1
    return SeveritySummary(**counts)


def score(summary: SeveritySummary, policy: ScoringPolicy | None = None) -> int:
    policy = policy or ScoringPolicy()
    penalty = sum(summary.count(severity) * policy.penalties.get(severity, 0) for severity in Severity)
    return max(0, min(MAX_SCORE, MAX_SCORE - penalty))


def risk_level(value: int, policy: ScoringPolicy | None = None) -> RiskLevel:
    policy = policy or ScoringPolicy()
    if value >= policy.low_threshold:
        return RiskLevel.LOW
    if value >= policy.medium_threshold:
        return RiskLevel.MEDIUM
    if value >= policy.high_threshold:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def evaluate(findings: list[Finding], policy: ScoringPolicy | None = None) -> tuple[SeveritySummary, int, RiskLevel]:
    summary = summarize(findings)
    value = score(summary, policy)
    return summary, value, risk_level(value, policy)
