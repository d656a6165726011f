from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from skill_trust.analyzers.prompts import SYSTEM_PROMPT, build_user_prompt
from skill_trust.config import AISettings
from skill_trust.exceptions import AIResponseError
from skill_trust.models.files import FileClass, PackageFile
from skill_trust.models.findings import Finding, Severity, Source
from skill_trust.models.reports import AISecurityReport, RiskLevel
from skill_trust.providers.base import LLMProvider
from skill_trust.rules.catalog import RuleCatalog, load_catalog
from skill_trust.scanning.files import classify, decode_text
from skill_trust.scoring.risk import summarize

logger = logging.getLogger(__name__)

CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


@dataclass
class AnalysisRequest:
    system: str
    user: str
    md_files: list[tuple[str, str]] = field(default_factory=list)
    script_files: list[tuple[str, str]] = field(default_factory=list)
    skipped_due_to_limit: list[str] = field(default_factory=list)
    used_bytes: int = 0

    @property
    def included_files(self) -> int:
        return len(self.md_files) + len(self.script_files)


class _AIFinding(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    rule_id: str | None = None
    severity: Severity
    category: str = "Other"
    title: str = "AI finding"
    file: str | None = None
    line: int | None = None
    evidence: str | None = None
    description: str = ""
    harm: str | None = None
    confidence: int | None = Field(default=None, ge=0, le=100)
    block_execution: bool = False

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value


class _AIResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    risk_level: RiskLevel
    findings: list[_AIFinding] = Field(default_factory=list)
    summary: str | None = None
    recommendations: list[str] = Field(default_factory=list)
    confidence: int = Field(default=0, ge=0, le=100)

    @field_validator("risk_level", mode="before")
    @classmethod
    def _known_level(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.lower()
        if value == RiskLevel.UNKNOWN.value:
            raise ValueError("riskLevel must be one of low, medium, high, critical")
        return value


def build_request(
    files: list[PackageFile],
    catalog: RuleCatalog,
    limits: AISettings | None = None,
) -> AnalysisRequest:
    limits = limits or AISettings()
    md_files: list[tuple[str, str]] = []
    script_files: list[tuple[str, str]] = []
    skipped: list[str] = []
    total = 0

    for file in sorted(files, key=lambda item: item.path):
        file_class = classify(file)
        if file_class not in (FileClass.MD, FileClass.SCRIPTS, FileClass.CONFIG):
            continue
        if file.size > limits.max_file_bytes or total + file.size > limits.max_total_bytes:
            skipped.append(file.path)
            continue
        total += file.size
        target = md_files if file_class is FileClass.MD else script_files
        target.append((file.path, decode_text(file)))

    if skipped:
        logger.info(
            "AI payload truncated: included=%s skipped=%s limit=%s bytes",
            len(md_files) + len(script_files),
            len(skipped),
            limits.max_total_bytes,
        )

    user = build_user_prompt(md_files, script_files, catalog, skipped) if md_files or script_files else ""
    return AnalysisRequest(
        system=SYSTEM_PROMPT,
        user=user,
        md_files=md_files,
        script_files=script_files,
        skipped_due_to_limit=skipped,
        used_bytes=total,
    )


def strip_code_fence(text: str) -> str:
    match = CODE_FENCE_RE.search(text)
    return match.group(1) if match else text.strip()


def parse_response(raw: str) -> _AIResponse:
    try:
        payload = json.loads(strip_code_fence(raw))
    except json.JSONDecodeError as exc:
        raise AIResponseError(f"AI response is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise AIResponseError("AI response must be a JSON object")
    try:
        return _AIResponse.model_validate(payload)
    except ValidationError as exc:
        raise AIResponseError(f"AI response does not match the expected schema: {exc}") from exc


def _to_finding(index: int, item: _AIFinding) -> Finding:
    description = item.description
    if item.harm:
        description = f"{description}\n\nHarm: {item.harm}" if description else f"Harm: {item.harm}"
    return Finding(
        id=f"ai-{index:04d}",
        source=Source.AI,
        category=item.category,
        severity=item.severity,
        title=item.title,
        description=description,
        file=item.file,
        line=item.line,
        rule_id=item.rule_id,
        evidence=item.evidence,
        confidence=item.confidence,
    )


def _failed_report(provider: LLMProvider | None, error: str, **extra: object) -> AISecurityReport:
    return AISecurityReport(
        provider=provider.name if provider else "none",
        model=provider.model if provider else "",
        risk_level=RiskLevel.UNKNOWN,
        error=error,
        **extra,  # type: ignore[arg-type]
    )


async def analyze(
    files: list[PackageFile],
    catalog: RuleCatalog | None,
    provider: LLMProvider | None,
    limits: AISettings | None = None,
) -> AISecurityReport:
    """Run one AI review of a package. Failures are reported as ``unknown`` risk, never raised."""
    catalog = catalog or load_catalog()
    request = build_request(files, catalog, limits)

    if request.included_files == 0:
        if request.skipped_due_to_limit:
            return _failed_report(provider, "All analysable files exceed the AI size limits")
        return AISecurityReport(
            provider=provider.name if provider else "none",
            model=provider.model if provider else "",
            risk_level=RiskLevel.LOW,
        )

    if provider is None:
        return _failed_report(None, "No AI provider configured")

    try:
        raw = await provider.complete(request.system, request.user)
    except Exception as exc:
        logger.warning("AI analysis call failed (%s): %s", provider.name, exc)
        return _failed_report(provider, f"AI provider call failed: {exc}", analyzed_files=request.included_files)

    try:
        parsed = parse_response(raw)
    except AIResponseError as exc:
        logger.warning("AI analysis response rejected (%s): %s", provider.name, exc)
        return _failed_report(provider, str(exc), analyzed_files=request.included_files, raw_response=raw)

    findings = [_to_finding(index, item) for index, item in enumerate(parsed.findings, start=1)]
    return AISecurityReport(
        provider=provider.name,
        model=provider.model,
        findings=findings,
        summary=summarize(findings),
        risk_level=parsed.risk_level,
        confidence=parsed.confidence,
        recommendations=parsed.recommendations,
        analyzed_files=request.included_files,
        raw_response=raw,
    )
