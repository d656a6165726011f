"""Domain models."""

from skill_trust.models.evaluation import (
    EvaluationJob,
    JobStatus,
    TestCase,
    TestConfig,
    TestResult,
    TestStatus,
)
from skill_trust.models.files import FileClass, PackageFile
from skill_trust.models.findings import Finding, Severity, Source
from skill_trust.models.reports import (
    AISecurityReport,
    CombinedRiskAssessment,
    RiskLevel,
    SecurityReport,
    SeveritySummary,
)
from skill_trust.models.versions import AuditEvent, ProcessingState, VersionRecord

__all__ = [
    "AISecurityReport",
    "AuditEvent",
    "CombinedRiskAssessment",
    "EvaluationJob",
    "FileClass",
    "Finding",
    "JobStatus",
    "PackageFile",
    "ProcessingState",
    "RiskLevel",
    "SecurityReport",
    "Severity",
    "SeveritySummary",
    "Source",
    "TestCase",
    "TestConfig",
    "TestResult",
    "TestStatus",
    "VersionRecord",
]
