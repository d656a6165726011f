from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class Source(StrEnum):
    PATTERN = "pattern"
    AI = "ai"


SEVERITY_ORDER = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFO: 0,
}

SCAN_ERROR_CATEGORY = "Scan Error"


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: Source
    category: str
    severity: Severity
    title: str
    description: str
    file: str | None = None
    line: int | None = None
    code_snippet: str | None = None
    recommendation: str | None = None
    rule_id: str | None = None
    evidence: str | None = None
    confidence: int | None = Field(default=None, ge=0, le=100)
