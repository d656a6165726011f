from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from skill_trust.models.findings import Finding, Severity


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


# UNKNOWN has no rank: it is the identity when merging.
RISK_ORDER = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}

WARNING_LEVELS = frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL})


def _now() -> datetime:
    return datetime.now(UTC)


class SeveritySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    info: int = 0

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low + self.info

    def count(self, severity: Severity) -> int:
        return int(getattr(self, severity.value))


class SecurityReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    findings: list[Finding] = Field(default_factory=list)
    summary: SeveritySummary = Field(default_factory=SeveritySummary)
    score: int = Field(default=100, ge=0, le=100)
    risk_level: RiskLevel = RiskLevel.LOW
    analyzed_files: int = 0
    skipped_files: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)


class AISecurityReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    findings: list[Finding] = Field(default_factory=list)
    summary: SeveritySummary = Field(default_factory=SeveritySummary)
    risk_level: RiskLevel = RiskLevel.UNKNOWN
    confidence: int = Field(default=0, ge=0, le=100)
    recommendations: list[str] = Field(default_factory=list)
    analyzed_files: int = 0
    raw_response: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_now)


class CombinedRiskAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_level: RiskLevel
    pattern_risk_level: RiskLevel = RiskLevel.UNKNOWN
    ai_risk_level: RiskLevel = RiskLevel.UNKNOWN
    findings: list[Finding] = Field(default_factory=list)
    summary: SeveritySummary = Field(default_factory=SeveritySummary)
    score: int | None = None
    errors: list[str] = Field(default_factory=list)

    @property
    def warning(self) -> bool:
        return self.risk_level in WARNING_LEVELS

    def headers(self) -> dict[str, str]:
        return {
            "X-Security-Score": "unknown" if self.score is None else str(self.score),
            "X-Security-Risk-Level": self.risk_level.value,
            "X-Security-Warning": "true" if self.warning else "false",
        }
