from __future__ import annotations

import asyncio
import logging
import os
import resource
import shlex
import shutil
import signal
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from skill_trust.config import SandboxSettings
from skill_trust.exceptions import SandboxError
from skill_trust.models.evaluation import TestConfig
from skill_trust.utils.retry import RetryableError

logger = logging.getLogger(__name__)

CONTAINER_SKILL_DIR = "/skill"
# docker run exits with 125 when the daemon cannot create or start the container.
DOCKER_START_FAILURE = 125
MAX_FILE_BYTES = 64 * 1024 * 1024


@dataclass(frozen=True)
class Execution:
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool
    duration_ms: int


def compose_script(command: str, config: TestConfig | None = None) -> str:
    """Wrap the entry command with the package's setup and teardown scripts."""
    script = command
    if config and config.setup_script:
        script = f"( {config.setup_script} ) </dev/null 1>&2 && {script}"
    if config and config.teardown_script:
        script = f"{script}; __status=$?; ( {config.teardown_script} ) </dev/null >/dev/null 2>&1; exit $__status"
    return script


async def _communicate(
    proc: asyncio.subprocess.Process,
    stdin: str,
    timeout_s: float,
) -> tuple[bytes, bytes, bool]:
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin.encode("utf-8")), timeout=timeout_s)
    except TimeoutError:
        return b"", b"", True
    return stdout, stderr, False


class SandboxBackend(ABC):
    name: str = "unknown"

    def __init__(self, settings: SandboxSettings) -> None:
        self.settings = settings

    @abstractmethod
    async def execute(
        self,
        package_path: Path,
        script: str,
        *,
        stdin: str,
        environment: dict[str, str],
        timeout_s: float,
    ) -> Execution:
        """Run ``script`` with the package mounted read-only.

        Raises RetryableError when the sandbox could not be started for a
        transient reason, and SandboxError when it cannot be started at all.
        """
        raise NotImplementedError


class DockerBackend(SandboxBackend):
    name = "docker"

    def build_command(self, container: str, package_path: Path, script: str, environment: dict[str, str]) -> list[str]:
        s = self.settings
        command = [
            s.docker_binary,
            "run",
            "--rm",
            "--name",
            container,
            "--network=none",
            "--read-only",
            "--tmpfs",
            "/tmp:rw,size=64m",
            f"--memory={s.memory}",
            f"--cpus={s.cpus}",
            f"--pids-limit={s.pids_limit}",
            "--security-opt",
            "no-new-privileges",
            "--cap-drop",
            "ALL",
        ]
        for key, value in sorted(environment.items()):
            command.extend(["-e", f"{key}={value}"])
        command.extend(
            [
                "-v",
                f"{package_path.resolve()}:{CONTAINER_SKILL_DIR}:ro",
                "-w",
                CONTAINER_SKILL_DIR,
                "-i",
                s.image,
                "sh",
                "-c",
                script,
            ]
        )
        return command

    async def _force_remove(self, container: str) -> None:
        for args in (["kill", container], ["rm", "-f", container]):
            try:
                proc = await asyncio.create_subprocess_exec(
                    self.settings.docker_binary,
                    *args,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
                await asyncio.wait_for(proc.wait(), timeout=30)
            except (OSError, TimeoutError) as exc:
                logger.warning("docker %s %s failed: %s", args[0], container, exc)

    async def execute(
        self,
        package_path: Path,
        script: str,
        *,
        stdin: str,
        environment: dict[str, str],
        timeout_s: float,
    ) -> Execution:
        container = f"skill-eval-{uuid.uuid4().hex[:12]}"
        command = self.build_command(container, package_path, script, environment)
        logger.info("Starting sandbox container %s: %s", container, shlex.join(command[:-1]))
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise SandboxError(f"docker binary not found: {self.settings.docker_binary}") from exc

        stdout, stderr, timed_out = await _communicate(proc, stdin, timeout_s)
        duration_ms = int((time.monotonic() - started) * 1000)
        if timed_out:
            logger.warning("Sandbox container %s timed out after %.1fs", container, timeout_s)
            await self._force_remove(container)
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            return Execution(None, "", "", True, duration_ms)

        stderr_text = stderr.decode("utf-8", errors="replace")
        if proc.returncode == DOCKER_START_FAILURE and not stdout:
            raise RetryableError(f"docker could not start the sandbox: {stderr_text.strip()}")
        return Execution(proc.returncode, stdout.decode("utf-8", errors="replace"), stderr_text, False, duration_ms)


class ProcessBackend(SandboxBackend):
    """Runs the test in a local process group with resource limits and no network."""

    name = "process"

    def _limits(self) -> Callable[[], None]:
        s = self.settings

        def _apply() -> None:
            resource.setrlimit(resource.RLIMIT_CPU, (s.cpu_seconds, s.cpu_seconds))
            resource.setrlimit(resource.RLIMIT_AS, (s.memory_bytes, s.memory_bytes))
            resource.setrlimit(resource.RLIMIT_FSIZE, (MAX_FILE_BYTES, MAX_FILE_BYTES))
            resource.setrlimit(resource.RLIMIT_NPROC, (s.pids_limit, s.pids_limit))

        return _apply

    def build_command(self, script: str) -> list[str]:
        command = ["sh", "-c", script]
        if self.settings.unshare_binary:
            return [self.settings.unshare_binary, "--net", "--map-root-user", *command]
        return command

    async def execute(
        self,
        package_path: Path,
        script: str,
        *,
        stdin: str,
        environment: dict[str, str],
        timeout_s: float,
    ) -> Execution:
        scratch = Path(tempfile.mkdtemp(prefix="skill-eval-"))
        try:
            workdir = scratch / "skill"
            shutil.copytree(package_path, workdir, symlinks=True)
            for name in ("home", "tmp"):
                (scratch / name).mkdir()
            env = {
                "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
                "HOME": str(scratch / "home"),
                "TMPDIR": str(scratch / "tmp"),
                "SKILL_DIR": str(workdir),
                "LANG": "C.UTF-8",
                **environment,
            }

            started = time.monotonic()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *self.build_command(script),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=workdir,
                    env=env,
                    start_new_session=True,
                    preexec_fn=self._limits(),
                )
            except FileNotFoundError as exc:
                raise SandboxError(f"Sandbox binary not found: {exc.filename}") from exc

            stdout, stderr, timed_out = await _communicate(proc, stdin, timeout_s)
            duration_ms = int((time.monotonic() - started) * 1000)
            if timed_out:
                logger.warning("Sandbox process %s timed out after %.1fs", proc.pid, timeout_s)
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                await proc.wait()
                return Execution(None, "", "", True, duration_ms)
            return Execution(
                proc.returncode,
                stdout.decode("utf-8", errors="replace"),
                stderr.decode("utf-8", errors="replace"),
                False,
                duration_ms,
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)


BACKENDS: dict[str, type[SandboxBackend]] = {
    DockerBackend.name: DockerBackend,
    ProcessBackend.name: ProcessBackend,
}


def create_backend(settings: SandboxSettings) -> SandboxBackend:
    if settings.backend not in BACKENDS:
        raise ValueError(f"Unsupported sandbox backend: {settings.backend}. Available: {', '.join(sorted(BACKENDS))}")
    return BACKENDS[settings.backend](settings)
