from __future__ import annotations

import logging
import time
from pathlib import Path

from skill_trust.config import SandboxSettings
from skill_trust.exceptions import SandboxError
from skill_trust.models.evaluation import TestCase, TestConfig, TestResult, TestStatus
from skill_trust.sandbox.backends import Execution, SandboxBackend, compose_script, create_backend
from skill_trust.utils.retry import RetryableError, async_retry_with_backoff

logger = logging.getLogger(__name__)


def check_output(output: str, test_case: TestCase) -> bool:
    if test_case.expected_output is not None and output.strip() != test_case.expected_output.strip():
        return False
    if test_case.expected_patterns and not all(pattern in output for pattern in test_case.expected_patterns):
        return False
    return True


class SandboxRunner:
    """Runs single test cases in an isolated sandbox and turns every outcome into a TestResult."""

    def __init__(self, settings: SandboxSettings | None = None, backend: SandboxBackend | None = None) -> None:
        self.settings = settings or SandboxSettings()
        self.backend = backend or create_backend(self.settings)

    def _truncate(self, text: str) -> str:
        limit = self.settings.max_output_chars
        if len(text) <= limit:
            return text
        return text[:limit] + f"\n... [truncated {len(text) - limit} chars]"

    async def _execute(self, package_path: Path, test_case: TestCase, config: TestConfig | None) -> Execution:
        command = (config.command if config and config.command else None) or self.settings.default_command
        script = compose_script(command, config)
        environment = dict(config.environment) if config else {}
        timeout_s = test_case.timeout_s + self.settings.grace_s

        async def _start() -> Execution:
            return await self.backend.execute(
                package_path,
                script,
                stdin=test_case.input,
                environment=environment,
                timeout_s=timeout_s,
            )

        return await async_retry_with_backoff(_start, attempts=self.settings.start_attempts, label="Sandbox start")

    async def run_test_case(
        self,
        package_path: str | Path,
        test_case: TestCase,
        config: TestConfig | None = None,
    ) -> TestResult:
        started = time.monotonic()

        def _error(message: str) -> TestResult:
            return TestResult(
                test_name=test_case.name,
                status=TestStatus.ERROR,
                output=self._truncate(message),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        try:
            execution = await self._execute(Path(package_path), test_case, config)
        except (RetryableError, SandboxError) as exc:
            logger.warning("Sandbox failed to start for %s: %s", test_case.name, exc)
            return _error(f"Sandbox failed to start: {exc}")
        except Exception as exc:  # pragma: no cover
            logger.exception("Unexpected sandbox failure for %s", test_case.name)
            return _error(f"Sandbox error: {exc}")

        if execution.timed_out:
            return TestResult(
                test_name=test_case.name,
                status=TestStatus.ERROR,
                output=f"Test timed out after {test_case.timeout}ms",
                duration_ms=execution.duration_ms,
            )

        full_output = execution.stdout if execution.stdout.strip() else execution.stderr
        if execution.exit_code != 0:
            status = TestStatus.ERROR
        elif check_output(full_output, test_case):
            status = TestStatus.PASSED
        else:
            status = TestStatus.FAILED
        output = self._truncate(full_output)
        logger.info("Test %s finished: %s (%sms)", test_case.name, status, execution.duration_ms)
        return TestResult(test_name=test_case.name, status=status, output=output, duration_ms=execution.duration_ms)
