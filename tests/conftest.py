from __future__ import annotations

import io
import json
import zipfile
from collections.abc import Callable

import pytest

from skill_trust.config import QueueSettings, Settings
from skill_trust.models.evaluation import TestCase, TestConfig, TestResult, TestStatus
from skill_trust.providers.base import LLMProvider
from skill_trust.rules.catalog import RuleCatalog, load_catalog
from skill_trust.storage.store import TrustStore

SAFE_SKILL_MD = "---\nname: greeter\ndescription: Greets the user by name.\n---\n# Greeter\n\nSay hello to the user.\n"
SAFE_SCRIPT = "import sys\n\nname = sys.stdin.read().strip()\nprint(f'Hello, {name}!')\n"


def build_zip(files: dict[str, str | bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for path, content in files.items():
            archive.writestr(path, content)
    return buffer.getvalue()


def tests_json(*names: str) -> str:
    return json.dumps(
        {
            "testCases": [
                {"name": name, "input": name, "expectedPatterns": ["Hello"], "timeout": 1000} for name in names
            ]
        }
    )


class FakeProvider(LLMProvider):
    name = "fake"

    def __init__(self, responses: list[str | Exception] | None = None) -> None:
        super().__init__(api_key="test-key", model="fake-model")
        self.responses = list(responses or [])
        self.calls: list[tuple[str, str]] = []

    async def complete(self, system: str, user: str) -> str:
        self.calls.append((system, user))
        value = self.responses.pop(0) if self.responses else '{"riskLevel": "low", "findings": []}'
        if isinstance(value, Exception):
            raise value
        return value


class FakeRunner:
    def __init__(self, fail_at: int | None = None) -> None:
        self.fail_at = fail_at
        self.calls: list[str] = []

    async def run_test_case(self, package_path, test_case: TestCase, config: TestConfig | None = None) -> TestResult:
        self.calls.append(test_case.name)
        if self.fail_at is not None and len(self.calls) - 1 == self.fail_at:
            raise RuntimeError("runner crashed")
        return TestResult(test_name=test_case.name, status=TestStatus.PASSED, output="Hello")


@pytest.fixture
def zip_builder() -> Callable[[dict[str, str | bytes]], bytes]:
    return build_zip


@pytest.fixture(scope="session")
def catalog() -> RuleCatalog:
    return load_catalog()


@pytest.fixture
def store():
    with TrustStore(":memory:") as trust_store:
        yield trust_store


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "trust.db"),
        packages_dir=str(tmp_path / "packages"),
        queue=QueueSettings(poll_interval_s=0.01),
    )
