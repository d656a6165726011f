"""
SQLite-backed persistence for the trust pipeline.

Holds version processing records, security and AI reports, evaluation jobs
with their per-test results, and the audit log. Reports are append-only;
readers always take the latest one by completion time.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any

from skill_trust.models.evaluation import JOB_STATUS_ORDER, EvaluationJob, JobStatus, TestConfig, TestResult, TestStatus
from skill_trust.models.reports import AISecurityReport, SecurityReport
from skill_trust.models.versions import STATE_ORDER, AuditEvent, ProcessingState, VersionRecord

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS versions (
    id TEXT PRIMARY KEY,
    skill_id TEXT,
    package_path TEXT,
    state TEXT NOT NULL,
    notes TEXT NOT NULL DEFAULT '[]',
    deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS security_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    version_id TEXT NOT NULL,
    risk_level TEXT NOT NULL,
    score INTEGER NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sr_version ON security_reports(version_id, created_at);

CREATE TABLE IF NOT EXISTS ai_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    version_id TEXT NOT NULL,
    risk_level TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ar_version ON ai_reports(version_id, created_at);

CREATE TABLE IF NOT EXISTS eval_jobs (
    id TEXT PRIMARY KEY,
    version_id TEXT NOT NULL,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    redeliver INTEGER NOT NULL DEFAULT 0,
    worker_id TEXT,
    lease_expires_at TEXT,
    package_path TEXT NOT NULL,
    test_config TEXT NOT NULL,
    error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_ej_claim ON eval_jobs(status, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_ej_version ON eval_jobs(version_id);

CREATE TABLE IF NOT EXISTS eval_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    test_name TEXT NOT NULL,
    status TEXT NOT NULL,
    output TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(job_id, position)
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,
    scope TEXT NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ae_created ON audit_events(created_at);
"""

# Columns added after the first release; older databases get them on open.
JOB_COLUMN_MIGRATIONS = {"worker_id": "TEXT", "lease_expires_at": "TEXT"}


def utcnow() -> datetime:
    return datetime.now(UTC)


def _ts(value: datetime | None) -> str | None:
    return value.astimezone(UTC).isoformat(timespec="microseconds") if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class TrustStore:
    """Durable store shared by the pipeline, the evaluation queue and the CLI."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._ensure_schema()

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, timeout=5.0, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._get_connection()
        conn.executescript(SCHEMA)
        existing = {row["name"] for row in conn.execute("PRAGMA table_info(eval_jobs)")}
        for column, kind in JOB_COLUMN_MIGRATIONS.items():
            if column not in existing:
                logger.info("Adding eval_jobs.%s column", column)
                conn.execute(f"ALTER TABLE eval_jobs ADD COLUMN {column} {kind}")

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> TrustStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # ----- versions --------------------------------------------------------

    def _version_from_row(self, row: sqlite3.Row) -> VersionRecord:
        return VersionRecord(
            id=row["id"],
            skill_id=row["skill_id"],
            package_path=row["package_path"],
            state=ProcessingState(row["state"]),
            notes=json.loads(row["notes"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def create_version(
        self,
        version_id: str,
        *,
        skill_id: str | None = None,
        package_path: str | None = None,
    ) -> VersionRecord:
        now = _ts(utcnow())
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO versions (id, skill_id, package_path, state, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                skill_id = COALESCE(excluded.skill_id, versions.skill_id),
                package_path = COALESCE(excluded.package_path, versions.package_path),
                updated_at = excluded.updated_at
            """,
            (version_id, skill_id, package_path, ProcessingState.UPLOADED.value, now, now),
        )
        record = self.get_version(version_id)
        if record is None:
            raise LookupError(f"Version {version_id} is deleted")
        return record

    def get_version(self, version_id: str) -> VersionRecord | None:
        row = (
            self._get_connection()
            .execute("SELECT * FROM versions WHERE id = ? AND deleted = 0", (version_id,))
            .fetchone()
        )
        return self._version_from_row(row) if row else None

    def list_versions(self, *, limit: int = 50, skill_id: str | None = None) -> list[VersionRecord]:
        query = "SELECT * FROM versions WHERE deleted = 0"
        params: list[Any] = []
        if skill_id is not None:
            query += " AND skill_id = ?"
            params.append(skill_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = self._get_connection().execute(query, params).fetchall()
        return [self._version_from_row(row) for row in rows]

    def advance_state(self, version_id: str, state: ProcessingState) -> VersionRecord:
        """Move a version forward; moving to an earlier state raises ValueError."""
        record = self.get_version(version_id)
        if record is None:
            raise LookupError(f"Unknown version {version_id}")
        if STATE_ORDER[state] < STATE_ORDER[record.state]:
            raise ValueError(f"Cannot move version {version_id} from {record.state} back to {state}")
        if state == record.state:
            return record
        self._get_connection().execute(
            "UPDATE versions SET state = ?, updated_at = ? WHERE id = ?",
            (state.value, _ts(utcnow()), version_id),
        )
        logger.info("Version %s: %s -> %s", version_id, record.state, state)
        return record.model_copy(update={"state": state})

    def add_note(self, version_id: str, note: str) -> None:
        record = self.get_version(version_id)
        if record is None:
            raise LookupError(f"Unknown version {version_id}")
        self._get_connection().execute(
            "UPDATE versions SET notes = ?, updated_at = ? WHERE id = ?",
            (json.dumps([*record.notes, note]), _ts(utcnow()), version_id),
        )

    def delete_version(self, version_id: str) -> bool:
        cursor = self._get_connection().execute(
            "UPDATE versions SET deleted = 1, updated_at = ? WHERE id = ? AND deleted = 0",
            (_ts(utcnow()), version_id),
        )
        return cursor.rowcount > 0

    def is_version_deleted(self, version_id: str) -> bool:
        row = self._get_connection().execute("SELECT deleted FROM versions WHERE id = ?", (version_id,)).fetchone()
        return bool(row and row["deleted"])

    # ----- reports ---------------------------------------------------------

    def save_security_report(self, version_id: str, report: SecurityReport) -> None:
        self._get_connection().execute(
            "INSERT INTO security_reports (version_id, risk_level, score, payload, created_at) VALUES (?, ?, ?, ?, ?)",
            (version_id, report.risk_level.value, report.score, report.model_dump_json(), _ts(report.created_at)),
        )

    def latest_security_report(self, version_id: str) -> SecurityReport | None:
        row = (
            self._get_connection()
            .execute(
                "SELECT payload FROM security_reports WHERE version_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
                (version_id,),
            )
            .fetchone()
        )
        return SecurityReport.model_validate_json(row["payload"]) if row else None

    def save_ai_report(self, version_id: str, report: AISecurityReport) -> None:
        self._get_connection().execute(
            "INSERT INTO ai_reports (version_id, risk_level, payload, created_at) VALUES (?, ?, ?, ?)",
            (version_id, report.risk_level.value, report.model_dump_json(), _ts(report.created_at)),
        )

    def latest_ai_report(self, version_id: str) -> AISecurityReport | None:
        row = (
            self._get_connection()
            .execute(
                "SELECT payload FROM ai_reports WHERE version_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
                (version_id,),
            )
            .fetchone()
        )
        return AISecurityReport.model_validate_json(row["payload"]) if row else None

    # ----- evaluation jobs -------------------------------------------------

    def _job_from_row(self, row: sqlite3.Row) -> EvaluationJob:
        return EvaluationJob(
            id=row["id"],
            skill_version_id=row["version_id"],
            status=JobStatus(row["status"]),
            priority=row["priority"],
            attempts=row["attempts"],
            package_path=row["package_path"],
            test_config=TestConfig.model_validate_json(row["test_config"]),
            error=row["error"],
            worker_id=row["worker_id"],
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
            created_at=_parse_ts(row["created_at"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    def create_job(self, job: EvaluationJob) -> None:
        self._get_connection().execute(
            """
            INSERT INTO eval_jobs (id, version_id, status, priority, attempts, package_path, test_config, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.skill_version_id,
                job.status.value,
                job.priority,
                job.attempts,
                job.package_path,
                job.test_config.model_dump_json(by_alias=True),
                _ts(job.created_at),
            ),
        )

    def get_job(self, job_id: str) -> EvaluationJob | None:
        row = self._get_connection().execute("SELECT * FROM eval_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._job_from_row(row) if row else None

    def jobs_for_version(self, version_id: str) -> list[EvaluationJob]:
        rows = (
            self._get_connection()
            .execute(
                "SELECT * FROM eval_jobs WHERE version_id = ? ORDER BY created_at DESC, rowid DESC",
                (version_id,),
            )
            .fetchall()
        )
        return [self._job_from_row(row) for row in rows]

    def claim_next_job(self, worker_id: str = "local", lease_s: float = 60.0) -> EvaluationJob | None:
        """Atomically move the most urgent pending job to RUNNING and count the attempt.

        Lower ``priority`` values are more urgent; ties go to the oldest job. RUNNING
        jobs marked for re-delivery are claimed again without changing status. The
        claiming worker holds a lease on the job until ``lease_s`` seconds from now.
        """
        now = utcnow()
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                """
                SELECT id FROM eval_jobs
                WHERE status = ? OR (status = ? AND redeliver = 1)
                ORDER BY priority ASC, created_at ASC, rowid ASC LIMIT 1
                """,
                (JobStatus.PENDING.value, JobStatus.RUNNING.value),
            ).fetchone()
            if row is None:
                conn.execute("COMMIT")
                return None
            conn.execute(
                """
                UPDATE eval_jobs SET status = ?, redeliver = 0, attempts = attempts + 1, started_at = ?,
                    worker_id = ?, lease_expires_at = ?
                WHERE id = ?
                """,
                (JobStatus.RUNNING.value, _ts(now), worker_id, _ts(now + timedelta(seconds=lease_s)), row["id"]),
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        return self.get_job(row["id"])

    def update_job_status(self, job_id: str, status: JobStatus, *, error: str | None = None) -> None:
        job = self.get_job(job_id)
        if job is None:
            raise LookupError(f"Unknown job {job_id}")
        if status != job.status and JOB_STATUS_ORDER[status] <= JOB_STATUS_ORDER[job.status]:
            raise ValueError(f"Cannot move job {job_id} from {job.status} to {status}")
        finished = status in (JobStatus.COMPLETED, JobStatus.FAILED)
        self._get_connection().execute(
            """
            UPDATE eval_jobs SET status = ?, redeliver = 0, error = COALESCE(?, error), completed_at = ?
            WHERE id = ?
            """,
            (status.value, error, _ts(utcnow()) if finished else None, job_id),
        )

    def renew_lease(self, job_id: str, worker_id: str, lease_s: float) -> bool:
        """Extend the lease of a RUNNING job; False when ``worker_id`` no longer holds it."""
        cursor = self._get_connection().execute(
            "UPDATE eval_jobs SET lease_expires_at = ? WHERE id = ? AND status = ? AND worker_id = ? AND redeliver = 0",
            (_ts(utcnow() + timedelta(seconds=lease_s)), job_id, JobStatus.RUNNING.value, worker_id),
        )
        return cursor.rowcount > 0

    def expired_jobs(self, now: datetime | None = None) -> list[EvaluationJob]:
        """RUNNING jobs whose lease ran out and that are not already queued for re-delivery."""
        now = now or utcnow()
        rows = (
            self._get_connection()
            .execute(
                "SELECT * FROM eval_jobs WHERE status = ? AND redeliver = 0 ORDER BY created_at, rowid",
                (JobStatus.RUNNING.value,),
            )
            .fetchall()
        )
        jobs = [self._job_from_row(row) for row in rows]
        return [job for job in jobs if job.lease_expires_at is None or job.lease_expires_at <= now]

    def mark_for_redelivery(self, job_id: str) -> None:
        self._get_connection().execute(
            "UPDATE eval_jobs SET redeliver = 1 WHERE id = ? AND status = ?",
            (job_id, JobStatus.RUNNING.value),
        )

    def record_result(self, job_id: str, position: int, result: TestResult) -> bool:
        """Store the result for one test case; an existing result for the same position is kept."""
        cursor = self._get_connection().execute(
            """
            INSERT OR IGNORE INTO eval_results (job_id, position, test_name, status, output, duration_ms, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (job_id, position, result.test_name, result.status.value, result.output, result.duration_ms, _ts(utcnow())),
        )
        return cursor.rowcount > 0

    def results(self, job_id: str) -> list[TestResult]:
        rows = (
            self._get_connection()
            .execute("SELECT * FROM eval_results WHERE job_id = ? ORDER BY position", (job_id,))
            .fetchall()
        )
        return [
            TestResult(
                test_name=row["test_name"],
                status=TestStatus(row["status"]),
                output=row["output"],
                duration_ms=row["duration_ms"],
            )
            for row in rows
        ]

    def recorded_positions(self, job_id: str) -> set[int]:
        rows = self._get_connection().execute("SELECT position FROM eval_results WHERE job_id = ?", (job_id,)).fetchall()
        return {row["position"] for row in rows}

    # ----- audit -----------------------------------------------------------

    def record_audit(self, event: AuditEvent) -> AuditEvent:
        stamped = event if event.created_at else event.model_copy(update={"created_at": utcnow()})
        self._get_connection().execute(
            """
            INSERT INTO audit_events (actor, action, scope, processed, failed, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stamped.actor,
                stamped.action,
                json.dumps(stamped.scope, default=str),
                stamped.processed,
                stamped.failed,
                json.dumps(stamped.metadata, default=str),
                _ts(stamped.created_at),
            ),
        )
        return stamped

    def audit_events(self, *, limit: int = 100, action: str | None = None) -> list[AuditEvent]:
        query = "SELECT * FROM audit_events"
        params: list[Any] = []
        if action is not None:
            query += " WHERE action = ?"
            params.append(action)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        rows = self._get_connection().execute(query, params).fetchall()
        return [
            AuditEvent(
                actor=row["actor"],
                action=row["action"],
                scope=json.loads(row["scope"]),
                processed=row["processed"],
                failed=row["failed"],
                metadata=json.loads(row["metadata"]),
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]
