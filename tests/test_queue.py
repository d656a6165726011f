from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import pytest
from conftest import FakeRunner

from skill_trust.config import QueueSettings
from skill_trust.evaluation.queue import VERSION_DELETED, EvaluationQueue
from skill_trust.evaluation.rate_limit import SlidingWindowLimiter
from skill_trust.exceptions import QueueError
from skill_trust.models.evaluation import JobStatus, TestCase, TestResult, TestStatus
from skill_trust.storage.store import TrustStore, utcnow

CASES = [TestCase(name="first"), TestCase(name="second"), TestCase(name="third")]


def _after_lease(queue: EvaluationQueue):
    return utcnow() + timedelta(seconds=queue.settings.lease_s + 1)


def _queue(store, runner: FakeRunner | None = None, **settings) -> EvaluationQueue:
    store.create_version("v1")
    return EvaluationQueue(store, runner or FakeRunner(), QueueSettings(poll_interval_s=0.01, **settings))


def test_every_test_case_gets_exactly_one_result(store) -> None:
    queue = _queue(store)
    job_id = queue.enqueue("v1", CASES, "/tmp/pkg")

    assert asyncio.run(queue.run_pending()) == 1

    job = queue.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.completed_at is not None
    results = queue.results(job_id)
    assert [result.test_name for result in results] == ["first", "second", "third"]
    assert all(result.status == TestStatus.PASSED for result in results)


def test_enqueue_without_test_cases_is_rejected(store) -> None:
    queue = _queue(store)
    with pytest.raises(QueueError):
        queue.enqueue("v1", [], "/tmp/pkg")


def test_runner_failure_fails_job_and_fills_missing_results(store) -> None:
    runner = FakeRunner(fail_at=1)
    queue = _queue(store, runner)
    job_id = queue.enqueue("v1", CASES, "/tmp/pkg")

    asyncio.run(queue.run_pending())

    job = queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert "runner crashed" in (job.error or "")
    results = queue.results(job_id)
    assert len(results) == len(CASES)
    assert [result.status for result in results] == [TestStatus.PASSED, TestStatus.ERROR, TestStatus.ERROR]


def test_jobs_for_deleted_versions_are_skipped(store) -> None:
    runner = FakeRunner()
    queue = _queue(store, runner)
    job_id = queue.enqueue("v1", CASES, "/tmp/pkg")
    store.delete_version("v1")

    asyncio.run(queue.run_pending())

    job = queue.get_job(job_id)
    assert runner.calls == []
    assert job.status == JobStatus.FAILED
    assert job.error == VERSION_DELETED
    assert [result.status for result in queue.results(job_id)] == [TestStatus.SKIPPED] * 3


def test_lower_priority_value_runs_first(store) -> None:
    queue = _queue(store)
    background = queue.enqueue("v1", CASES, "/tmp/pkg", priority=9)
    urgent = queue.enqueue("v1", CASES, "/tmp/pkg", priority=1)
    default = queue.enqueue("v1", CASES, "/tmp/pkg")

    assert [queue.claim().id for _ in range(3)] == [urgent, default, background]


def test_recover_redelivers_and_runs_only_missing_cases(store) -> None:
    runner = FakeRunner()
    queue = _queue(store, runner, max_attempts=2)
    job_id = queue.enqueue("v1", CASES, "/tmp/pkg")
    queue.claim()
    store.record_result(job_id, 0, TestResult(test_name="first", status=TestStatus.PASSED))

    assert queue.recover() == (0, 0)
    assert queue.recover(_after_lease(queue)) == (1, 0)
    asyncio.run(queue.run_pending())

    assert runner.calls == ["second", "third"]
    job = queue.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 2
    assert len(queue.results(job_id)) == 3


def test_recover_fails_jobs_out_of_attempts(store) -> None:
    queue = _queue(store, max_attempts=1)
    job_id = queue.enqueue("v1", CASES, "/tmp/pkg")
    queue.claim()

    assert queue.recover(_after_lease(queue)) == (0, 1)

    assert queue.get_job(job_id).status == JobStatus.FAILED
    assert [result.status for result in queue.results(job_id)] == [TestStatus.ERROR] * 3


def test_claim_respects_rate_limit(store) -> None:
    now = [0.0]
    limiter = SlidingWindowLimiter(1, 60.0, clock=lambda: now[0])
    store.create_version("v1")
    queue = EvaluationQueue(store, FakeRunner(), QueueSettings(), limiter=limiter)
    first = queue.enqueue("v1", CASES, "/tmp/pkg")
    second = queue.enqueue("v1", CASES, "/tmp/pkg")

    assert queue.claim().id == first
    assert queue.claim() is None
    now[0] = 61.0
    assert queue.claim().id == second


def test_sliding_window_limiter() -> None:
    now = [0.0]
    limiter = SlidingWindowLimiter(2, 10.0, clock=lambda: now[0])

    limiter.record()
    now[0] = 4.0
    limiter.record()
    assert limiter.delay() == pytest.approx(6.0)
    now[0] = 10.0
    assert limiter.delay() == 0.0
    with pytest.raises(ValueError):
        SlidingWindowLimiter(0, 10.0)


def test_worker_pool_processes_jobs_and_drains(store) -> None:
    queue = _queue(store, concurrency=2)
    job_ids = [queue.enqueue("v1", CASES, "/tmp/pkg") for _ in range(3)]

    async def _run() -> None:
        queue.start()
        assert queue.running
        for _ in range(500):
            if all(queue.get_job(job_id).status == JobStatus.COMPLETED for job_id in job_ids):
                break
            await asyncio.sleep(0.01)
        await queue.shutdown(drain=True)

    asyncio.run(_run())

    assert not queue.running
    assert all(queue.get_job(job_id).status == JobStatus.COMPLETED for job_id in job_ids)


def test_jobs_for_version_newest_first(store) -> None:
    queue = _queue(store)
    older = queue.enqueue("v1", CASES, "/tmp/pkg")
    newer = queue.enqueue("v1", CASES, "/tmp/pkg")
    assert [job.id for job in queue.jobs_for_version("v1")] == [newer, older]


def test_recover_leaves_jobs_of_a_live_worker_alone(tmp_path) -> None:
    path = tmp_path / "trust.db"
    with TrustStore(path) as store_a, TrustStore(path) as store_b:
        store_a.create_version("v1")
        first = EvaluationQueue(store_a, FakeRunner(), QueueSettings(max_attempts=1), worker_id="worker-a")
        second = EvaluationQueue(store_b, FakeRunner(), QueueSettings(max_attempts=1), worker_id="worker-b")
        job_id = first.enqueue("v1", CASES[:2], "/tmp/pkg")
        assert first.claim().id == job_id

        assert second.recover() == (0, 0)

        job = second.get_job(job_id)
        assert job.status == JobStatus.RUNNING
        assert job.worker_id == "worker-a"
        assert second.results(job_id) == []

        assert second.recover(_after_lease(second)) == (0, 1)
        assert second.get_job(job_id).status == JobStatus.FAILED


class SlowRunner(FakeRunner):
    async def run_test_case(self, package_path, test_case, config=None):
        await asyncio.sleep(0.1)
        return await super().run_test_case(package_path, test_case, config)


def test_heartbeat_keeps_lease_alive_during_long_jobs(store) -> None:
    queue = _queue(store, SlowRunner(), lease_s=0.15)
    job_id = queue.enqueue("v1", CASES, "/tmp/pkg")
    seen_expired: list[int] = []

    async def _run() -> None:
        task = asyncio.create_task(queue.run_pending())
        while not task.done():
            await asyncio.sleep(0.02)
            job = queue.get_job(job_id)
            if job.status == JobStatus.RUNNING:
                seen_expired.append(len(store.expired_jobs()))
        await task

    asyncio.run(_run())

    assert seen_expired and not any(seen_expired)
    assert queue.get_job(job_id).status == JobStatus.COMPLETED


def test_worker_survives_store_errors(store, monkeypatch, caplog) -> None:
    queue = _queue(store, concurrency=1)
    job_id = queue.enqueue("v1", CASES, "/tmp/pkg")
    original_claim = queue.claim
    calls = {"count": 0}

    def flaky_claim():
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("database is locked")
        return original_claim()

    monkeypatch.setattr(queue, "claim", flaky_claim)

    async def _run() -> None:
        queue.start()
        for _ in range(500):
            if queue.get_job(job_id).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        await queue.shutdown(drain=True)

    with caplog.at_level(logging.ERROR, logger="skill_trust.evaluation.queue"):
        asyncio.run(_run())

    assert calls["count"] >= 2
    assert queue.get_job(job_id).status == JobStatus.COMPLETED
    assert "hit an error" in caplog.text
