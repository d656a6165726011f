from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_TEST_TIMEOUT_MS = 30_000


class JobStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


JOB_STATUS_ORDER = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


class TestStatus(StrEnum):
    __test__ = False

    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class TestCase(_CamelModel):
    __test__ = False

    name: str
    input: str = ""
    description: str | None = None
    expected_output: str | None = None
    expected_patterns: list[str] | None = None
    timeout: int = Field(default=DEFAULT_TEST_TIMEOUT_MS, gt=0)

    @property
    def timeout_s(self) -> float:
        return self.timeout / 1000


class TestConfig(_CamelModel):
    """Contents of a package's ``tests.json``."""

    __test__ = False

    test_cases: list[TestCase] = Field(default_factory=list)
    command: str | None = None
    setup_script: str | None = None
    teardown_script: str | None = None
    environment: dict[str, str] = Field(default_factory=dict)


class TestResult(BaseModel):
    model_config = ConfigDict(frozen=True)
    __test__ = False

    test_name: str
    status: TestStatus
    output: str = ""
    duration_ms: int = 0


class EvaluationJob(BaseModel):
    id: str
    skill_version_id: str
    status: JobStatus = JobStatus.PENDING
    priority: int = 5
    attempts: int = 0
    package_path: str
    test_config: TestConfig
    error: str | None = None
    worker_id: str | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def test_cases(self) -> list[TestCase]:
        return self.test_config.test_cases
