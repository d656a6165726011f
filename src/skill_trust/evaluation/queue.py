from __future__ import annotations

import asyncio
import logging
import os
import socket
import sqlite3
import uuid
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from skill_trust.config import QueueSettings
from skill_trust.evaluation.rate_limit import SlidingWindowLimiter
from skill_trust.exceptions import QueueError
from skill_trust.models.evaluation import EvaluationJob, JobStatus, TestCase, TestConfig, TestResult, TestStatus
from skill_trust.sandbox.runner import SandboxRunner
from skill_trust.storage.store import TrustStore, utcnow

logger = logging.getLogger(__name__)

VERSION_DELETED = "version deleted"


class EvaluationQueue:
    """Durable evaluation queue with a bounded, rate-limited worker pool.

    Jobs are persisted in the store, claimed atomically by priority and age,
    and delivered at least once. Results are keyed by test-case position, so a
    re-delivered job only runs the cases that have no result yet.

    A claimed job is leased to this queue's ``worker_id`` and the lease is
    renewed while the job runs. Only jobs whose lease has expired are
    recovered, so several worker processes can share one database.
    """

    def __init__(
        self,
        store: TrustStore,
        runner: SandboxRunner,
        settings: QueueSettings | None = None,
        limiter: SlidingWindowLimiter | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.settings = settings or QueueSettings()
        self.limiter = limiter or SlidingWindowLimiter(self.settings.rate_limit_jobs, self.settings.rate_limit_window_s)
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._stop = asyncio.Event()
        self._workers: list[asyncio.Task[None]] = []

    # ----- producer --------------------------------------------------------

    def enqueue(
        self,
        skill_version_id: str,
        test_cases: Sequence[TestCase] | TestConfig,
        package_path: str | Path,
        priority: int | None = None,
    ) -> str:
        config = test_cases if isinstance(test_cases, TestConfig) else TestConfig(test_cases=list(test_cases))
        if not config.test_cases:
            raise QueueError(f"No test cases to evaluate for version {skill_version_id}")
        job = EvaluationJob(
            id=str(uuid.uuid4()),
            skill_version_id=skill_version_id,
            priority=self.settings.default_priority if priority is None else priority,
            package_path=str(package_path),
            test_config=config,
            created_at=utcnow(),
        )
        try:
            self.store.create_job(job)
        except sqlite3.Error as exc:
            raise QueueError(f"Failed to enqueue evaluation for version {skill_version_id}: {exc}") from exc
        logger.info("Queued evaluation job %s for version %s (%s tests)", job.id, skill_version_id, len(job.test_cases))
        return job.id

    # ----- reads -----------------------------------------------------------

    def get_job(self, job_id: str) -> EvaluationJob | None:
        return self.store.get_job(job_id)

    def results(self, job_id: str) -> list[TestResult]:
        return self.store.results(job_id)

    def jobs_for_version(self, version_id: str) -> list[EvaluationJob]:
        return self.store.jobs_for_version(version_id)

    # ----- processing ------------------------------------------------------

    def _fill_missing(self, job: EvaluationJob, status: TestStatus, output: str) -> None:
        done = self.store.recorded_positions(job.id)
        for position, case in enumerate(job.test_cases):
            if position not in done:
                self.store.record_result(job.id, position, TestResult(test_name=case.name, status=status, output=output))

    def _fail(self, job: EvaluationJob, error: str, status: TestStatus = TestStatus.ERROR) -> None:
        self._fill_missing(job, status, error)
        self.store.update_job_status(job.id, JobStatus.FAILED, error=error)

    async def _heartbeat(self, job_id: str) -> None:
        interval = self.settings.lease_s / 3
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = self.store.renew_lease(job_id, self.worker_id, self.settings.lease_s)
            except sqlite3.Error as exc:
                logger.warning("Could not renew lease on job %s: %s", job_id, exc)
                continue
            if not renewed:
                logger.warning("Worker %s no longer holds the lease on job %s", self.worker_id, job_id)
                return

    async def process_job(self, job: EvaluationJob) -> None:
        if self.store.is_version_deleted(job.skill_version_id):
            logger.info("Dropping job %s: version %s was deleted", job.id, job.skill_version_id)
            self._fail(job, VERSION_DELETED, TestStatus.SKIPPED)
            return

        logger.info("Running job %s (attempt %s, %s tests)", job.id, job.attempts, len(job.test_cases))
        heartbeat = asyncio.create_task(self._heartbeat(job.id), name=f"lease-{job.id}")
        try:
            done = self.store.recorded_positions(job.id)
            for position, case in enumerate(job.test_cases):
                if position in done:
                    continue
                result = await self.runner.run_test_case(job.package_path, case, job.test_config)
                self.store.record_result(job.id, position, result)
            self.store.update_job_status(job.id, JobStatus.COMPLETED)
        except Exception as exc:
            logger.exception("Evaluation job %s failed", job.id)
            self._fail(job, f"Evaluation failed: {exc}")
            return
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
        logger.info("Job %s completed", job.id)

    def claim(self) -> EvaluationJob | None:
        """Claim the next job if the rate limit allows a start now."""
        if self.limiter.delay() > 0:
            return None
        job = self.store.claim_next_job(self.worker_id, self.settings.lease_s)
        if job is not None:
            self.limiter.record()
        return job

    async def run_pending(self) -> int:
        """Process queued jobs one at a time until none is left; returns how many ran."""
        processed = 0
        while True:
            wait = self.limiter.delay()
            if wait > 0:
                await asyncio.sleep(wait)
                continue
            job = self.claim()
            if job is None:
                return processed
            await self.process_job(job)
            processed += 1

    def recover(self, now: datetime | None = None) -> tuple[int, int]:
        """Re-deliver RUNNING jobs whose lease expired; returns (redelivered, failed).

        A live worker keeps renewing its leases, so its in-flight jobs are left alone.
        """
        redelivered = failed = 0
        for job in self.store.expired_jobs(now):
            if job.attempts < self.settings.max_attempts:
                self.store.mark_for_redelivery(job.id)
                redelivered += 1
            else:
                self._fail(job, f"Worker stopped before the job finished (attempts={job.attempts})")
                failed += 1
        if redelivered or failed:
            logger.info("Recovered interrupted jobs: redelivered=%s failed=%s", redelivered, failed)
        return redelivered, failed

    # ----- worker pool -----------------------------------------------------

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _worker(self, index: int) -> None:
        logger.info("Evaluation worker %s started", index)
        while not self._stop.is_set():
            try:
                wait = self.limiter.delay()
                if wait > 0:
                    await self._idle(min(wait, self.settings.poll_interval_s))
                    continue
                job = self.claim()
                if job is None:
                    await self._idle(self.settings.poll_interval_s)
                    continue
                await self.process_job(job)
            except Exception:
                logger.exception("Evaluation worker %s hit an error; continuing", index)
                await self._idle(self.settings.poll_interval_s)
        logger.info("Evaluation worker %s stopped", index)

    async def _reaper(self) -> None:
        while not self._stop.is_set():
            await self._idle(self.settings.lease_s)
            if self._stop.is_set():
                return
            try:
                self.recover()
            except Exception:
                logger.exception("Recovering expired evaluation jobs failed")

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"evaluation-worker-{index}")
            for index in range(self.settings.concurrency)
        ]
        self._workers.append(asyncio.create_task(self._reaper(), name="evaluation-reaper"))

    async def shutdown(self, *, drain: bool = True) -> None:
        """Stop claiming jobs. With ``drain`` in-flight jobs finish; otherwise they are cancelled."""
        self._stop.set()
        if not drain:
            for task in self._workers:
                task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
