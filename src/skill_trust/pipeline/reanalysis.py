from __future__ import annotations

import logging
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from skill_trust.analyzers.ai_analyzer import analyze
from skill_trust.config import Settings
from skill_trust.models.reports import RiskLevel
from skill_trust.models.versions import AuditEvent, VersionRecord
from skill_trust.providers.base import LLMProvider
from skill_trust.rules.catalog import RuleCatalog
from skill_trust.scanning.files import read_directory
from skill_trust.scanning.pattern_scanner import scan_files
from skill_trust.scoring.merge import combined_for_version
from skill_trust.storage.audit import AuditLog
from skill_trust.storage.store import TrustStore

logger = logging.getLogger(__name__)

MAX_REANALYSIS_VERSIONS = 50
REANALYSIS_ACTION = "security.reanalysis"


class ScopeType(StrEnum):
    ALL = "all"
    SKILLS = "skills"
    VERSIONS = "versions"


class ReanalysisScope(BaseModel):
    type: ScopeType = ScopeType.ALL
    skill_ids: list[str] = Field(default_factory=list)
    version_ids: list[str] = Field(default_factory=list)
    include_pattern_scan: bool = False

    @model_validator(mode="after")
    def _ids_for_scope(self) -> ReanalysisScope:
        if self.type is ScopeType.SKILLS and not self.skill_ids:
            raise ValueError("skill_ids is required for skills scope")
        if self.type is ScopeType.VERSIONS and not self.version_ids:
            raise ValueError("version_ids is required for versions scope")
        return self


class VersionOutcome(BaseModel):
    version_id: str
    succeeded: bool
    risk_level: RiskLevel | None = None
    error: str | None = None


class ReanalysisResult(BaseModel):
    processed: int = 0
    failed: int = 0
    outcomes: list[VersionOutcome] = Field(default_factory=list)


def select_versions(store: TrustStore, scope: ReanalysisScope) -> list[VersionRecord]:
    if scope.type is ScopeType.VERSIONS:
        records = [store.get_version(version_id) for version_id in scope.version_ids]
        selected = [record for record in records if record is not None]
    elif scope.type is ScopeType.SKILLS:
        selected = []
        for skill_id in scope.skill_ids:
            selected.extend(store.list_versions(limit=MAX_REANALYSIS_VERSIONS, skill_id=skill_id))
    else:
        selected = store.list_versions(limit=MAX_REANALYSIS_VERSIONS)
    return selected[:MAX_REANALYSIS_VERSIONS]


async def _reanalyze_version(
    store: TrustStore,
    record: VersionRecord,
    scope: ReanalysisScope,
    *,
    settings: Settings,
    catalog: RuleCatalog,
    provider: LLMProvider | None,
) -> VersionOutcome:
    if not record.package_path or not Path(record.package_path).is_dir():
        return VersionOutcome(version_id=record.id, succeeded=False, error="Stored package is not available")

    files = read_directory(Path(record.package_path))
    if scope.include_pattern_scan:
        store.save_security_report(record.id, scan_files(files, catalog, settings.scoring))

    report = await analyze(files, catalog, provider, settings.ai)
    store.save_ai_report(record.id, report)
    if report.error:
        return VersionOutcome(version_id=record.id, succeeded=False, error=report.error)

    combined = combined_for_version(store, record.id)
    return VersionOutcome(version_id=record.id, succeeded=True, risk_level=combined.risk_level)


async def reanalyze(
    store: TrustStore,
    scope: ReanalysisScope,
    actor: str,
    *,
    settings: Settings,
    catalog: RuleCatalog,
    provider: LLMProvider | None,
    audit: AuditLog | None = None,
) -> ReanalysisResult:
    """Re-run the AI review (and optionally the pattern scan) for up to 50 versions in ``scope``."""
    result = ReanalysisResult()
    for record in select_versions(store, scope):
        try:
            outcome = await _reanalyze_version(
                store, record, scope, settings=settings, catalog=catalog, provider=provider
            )
        except Exception as exc:
            logger.exception("Re-analysis failed for version %s", record.id)
            outcome = VersionOutcome(version_id=record.id, succeeded=False, error=str(exc))
        result.outcomes.append(outcome)
        if outcome.succeeded:
            result.processed += 1
        else:
            result.failed += 1

    await (audit or AuditLog(store)).record(
        AuditEvent(
            actor=actor,
            action=REANALYSIS_ACTION,
            scope=scope.model_dump(mode="json"),
            processed=result.processed,
            failed=result.failed,
            metadata={"version_ids": [outcome.version_id for outcome in result.outcomes]},
        )
    )
    logger.info("Re-analysis by %s: processed=%s failed=%s", actor, result.processed, result.failed)
    return result
