from __future__ import annotations

import logging
import shutil
from pathlib import Path

from pydantic import ValidationError

from skill_trust.analyzers.ai_analyzer import analyze
from skill_trust.config import Settings
from skill_trust.evaluation.queue import EvaluationQueue
from skill_trust.exceptions import ArchiveError
from skill_trust.models.evaluation import TestConfig
from skill_trust.models.files import PackageFile
from skill_trust.models.reports import AISecurityReport, RiskLevel
from skill_trust.models.versions import STATE_ORDER, AuditEvent, ProcessingState, VersionRecord
from skill_trust.providers.base import LLMProvider
from skill_trust.rules.catalog import RuleCatalog
from skill_trust.scanning.files import extract_archive
from skill_trust.scanning.pattern_scanner import scan_archive
from skill_trust.scoring.merge import combined_for_version
from skill_trust.storage.audit import AuditLog
from skill_trust.storage.store import TrustStore

logger = logging.getLogger(__name__)

TESTS_FILE = "tests.json"
SYSTEM_ACTOR = "system"


def find_test_config(files: list[PackageFile]) -> TestConfig | None:
    """Parse the package's tests.json; the shallowest one wins. Raises ValueError when it is invalid."""
    candidates = sorted((file for file in files if file.name == TESTS_FILE), key=lambda file: file.path.count("/"))
    if not candidates:
        return None
    try:
        return TestConfig.model_validate_json(candidates[0].content)
    except ValidationError as exc:
        raise ValueError(f"Invalid {candidates[0].path}: {exc.error_count()} validation error(s)") from exc


class VersionProcessor:
    """Runs one uploaded version through scan, AI analysis and evaluation enqueueing.

    A failing stage is recorded as a note on the version and processing moves
    on; every run ends in PROCESSING_COMPLETE.
    """

    def __init__(
        self,
        store: TrustStore,
        *,
        settings: Settings,
        catalog: RuleCatalog,
        provider: LLMProvider | None,
        queue: EvaluationQueue | None = None,
        audit: AuditLog | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.catalog = catalog
        self.provider = provider
        self.queue = queue
        self.audit = audit or AuditLog(store)

    def _advance(self, version_id: str, state: ProcessingState) -> None:
        record = self.store.get_version(version_id)
        if record is not None and STATE_ORDER[state] > STATE_ORDER[record.state]:
            self.store.advance_state(version_id, state)

    async def _stage_done(self, version_id: str, stage: str, actor: str, **metadata: object) -> None:
        await self.audit.record(
            AuditEvent(
                actor=actor,
                action=f"version.{stage}",
                scope={"version_id": version_id},
                processed=1,
                metadata=metadata,
            )
        )

    def _note(self, version_id: str, stage: str, exc: BaseException) -> None:
        logger.warning("Stage %s failed for version %s: %s", stage, version_id, exc)
        self.store.add_note(version_id, f"{stage}: {exc}")

    def _store_package(self, version_id: str, archive_bytes: bytes) -> tuple[list[PackageFile], Path]:
        destination = Path(self.settings.packages_dir) / version_id
        if destination.exists():
            shutil.rmtree(destination)
        files = extract_archive(archive_bytes, destination)
        self.store.create_version(version_id, package_path=str(destination))
        return files, destination

    async def process(
        self,
        version_id: str,
        archive_bytes: bytes,
        *,
        skill_id: str | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> VersionRecord:
        self.store.create_version(version_id, skill_id=skill_id)
        logger.info("Processing version %s (%s bytes)", version_id, len(archive_bytes))

        files: list[PackageFile] | None = None
        package_dir: Path | None = None
        try:
            files, package_dir = self._store_package(version_id, archive_bytes)
        except (ArchiveError, OSError) as exc:
            self._note(version_id, "upload", exc)

        try:
            await self._scan(version_id, archive_bytes, actor)
            await self._analyze(version_id, files, actor)
            await self._enqueue(version_id, files, package_dir, actor)
        finally:
            self._advance(version_id, ProcessingState.PROCESSING_COMPLETE)

        combined = combined_for_version(self.store, version_id)
        await self._stage_done(version_id, "processed", actor, risk_level=combined.risk_level.value)
        logger.info("Version %s processed: risk=%s", version_id, combined.risk_level)
        record = self.store.get_version(version_id)
        if record is None:
            raise LookupError(f"Version {version_id} was deleted during processing")
        return record

    async def _scan(self, version_id: str, archive_bytes: bytes, actor: str) -> None:
        try:
            report = scan_archive(archive_bytes, self.catalog, self.settings.scoring)
            self.store.save_security_report(version_id, report)
        except Exception as exc:
            self._note(version_id, "scan", exc)
        else:
            await self._stage_done(version_id, "scan", actor, score=report.score, risk_level=report.risk_level.value)
        self._advance(version_id, ProcessingState.SCANNED)

    async def _analyze(self, version_id: str, files: list[PackageFile] | None, actor: str) -> None:
        try:
            if files is None:
                report = AISecurityReport(
                    provider=self.provider.name if self.provider else "none",
                    model=self.provider.model if self.provider else "",
                    risk_level=RiskLevel.UNKNOWN,
                    error="Skill package could not be read",
                )
            else:
                report = await analyze(files, self.catalog, self.provider, self.settings.ai)
            self.store.save_ai_report(version_id, report)
            if report.error:
                self.store.add_note(version_id, f"ai_analysis: {report.error}")
        except Exception as exc:
            self._note(version_id, "ai_analysis", exc)
        else:
            await self._stage_done(version_id, "ai_analysis", actor, risk_level=report.risk_level.value)
        self._advance(version_id, ProcessingState.AI_ANALYZED)

    async def _enqueue(
        self,
        version_id: str,
        files: list[PackageFile] | None,
        package_dir: Path | None,
        actor: str,
    ) -> None:
        if files is None or package_dir is None:
            return
        try:
            config = find_test_config(files)
            if config is None or not config.test_cases:
                logger.info("Version %s declares no test cases; skipping evaluation", version_id)
                return
            if self.queue is None:
                self.store.add_note(version_id, "evaluation: no evaluation queue configured")
                return
            job_id = self.queue.enqueue(version_id, config, package_dir)
        except Exception as exc:
            self._note(version_id, "evaluation", exc)
            return
        self._advance(version_id, ProcessingState.EVAL_QUEUED)
        await self._stage_done(version_id, "eval_queued", actor, job_id=job_id, tests=len(config.test_cases))
