from __future__ import annotations

from skill_trust.models.reports import RISK_ORDER, AISecurityReport, CombinedRiskAssessment, RiskLevel, SecurityReport
from skill_trust.scoring.risk import summarize
from skill_trust.storage.store import TrustStore

NO_PATTERN_REPORT = "No pattern scan report"
NO_AI_REPORT = "No AI analysis report"


def max_risk_level(*levels: RiskLevel) -> RiskLevel:
    """Highest of ``levels``; UNKNOWN only wins when nothing else is known."""
    known = [level for level in levels if level in RISK_ORDER]
    if not known:
        return RiskLevel.UNKNOWN
    return max(known, key=RISK_ORDER.__getitem__)


def merge(
    pattern_report: SecurityReport | None,
    ai_report: AISecurityReport | None,
) -> CombinedRiskAssessment:
    pattern_level = pattern_report.risk_level if pattern_report else RiskLevel.UNKNOWN
    ai_level = ai_report.risk_level if ai_report else RiskLevel.UNKNOWN
    findings = [
        *(pattern_report.findings if pattern_report else []),
        *(ai_report.findings if ai_report else []),
    ]

    errors: list[str] = []
    if pattern_report is None:
        errors.append(NO_PATTERN_REPORT)
    if ai_report is None:
        errors.append(NO_AI_REPORT)
    elif ai_report.error:
        errors.append(f"AI analysis: {ai_report.error}")

    return CombinedRiskAssessment(
        risk_level=max_risk_level(pattern_level, ai_level),
        pattern_risk_level=pattern_level,
        ai_risk_level=ai_level,
        findings=findings,
        summary=summarize(findings),
        score=pattern_report.score if pattern_report else None,
        errors=errors,
    )


def combined_for_version(store: TrustStore, version_id: str) -> CombinedRiskAssessment:
    return merge(store.latest_security_report(version_id), store.latest_ai_report(version_id))
