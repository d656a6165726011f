from __future__ import annotations

import logging
from dataclasses import dataclass

from skill_trust.config import ScoringPolicy
from skill_trust.exceptions import ArchiveError
from skill_trust.models.files import FileClass, PackageFile
from skill_trust.models.findings import SCAN_ERROR_CATEGORY, Finding, Severity, Source
from skill_trust.models.reports import RiskLevel, SecurityReport, SeveritySummary
from skill_trust.rules.catalog import Granularity, Matcher, RuleCatalog, SecurityRule, load_catalog
from skill_trust.rules.predicates import PREDICATES
from skill_trust.scanning.dependencies import check_dependency_file
from skill_trust.scanning.files import classify, decode_text, read_archive
from skill_trust.scoring.risk import evaluate

logger = logging.getLogger(__name__)

SNIPPET_CONTEXT = 3
MAX_EVIDENCE_CHARS = 200
COMMENT_PREFIXES = ("#", "//")


@dataclass(frozen=True)
class _Hit:
    rule: SecurityRule
    line: int
    evidence: str


def _comment_lines(lines: list[str]) -> set[int]:
    """1-based numbers of lines that are entirely comments."""
    comments: set[int] = set()
    in_block = False
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if in_block:
            comments.add(number)
            if "*/" in line:
                in_block = False
            continue
        if line.startswith(COMMENT_PREFIXES):
            comments.add(number)
        elif line.startswith("/*"):
            comments.add(number)
            in_block = "*/" not in line[2:]
    return comments


def _matcher_hits(matcher: Matcher, text: str, lines: list[str]) -> list[tuple[int, str]]:
    if matcher.predicate is not None:
        return PREDICATES[matcher.predicate](text)

    hits: list[tuple[int, str]] = []
    for number, line in enumerate(lines, start=1):
        if matcher.compiled is not None:
            hits.extend((number, match.group(0)) for match in matcher.compiled.finditer(line))
        elif matcher.literal is not None:
            start = line.find(matcher.literal)
            while start != -1:
                hits.append((number, matcher.literal))
                start = line.find(matcher.literal, start + len(matcher.literal))
    if matcher.compiled_exclude is not None:
        hits = [hit for hit in hits if not matcher.compiled_exclude.search(hit[1])]
    return hits


def _rule_hits(rule: SecurityRule, text: str, lines: list[str], skip: set[int]) -> list[_Hit]:
    by_line: dict[int, str] = {}
    for matcher in rule.matchers:
        for number, evidence in _matcher_hits(matcher, text, lines):
            if number in skip:
                continue
            by_line.setdefault(number, evidence)
    hits = [_Hit(rule, number, evidence) for number, evidence in sorted(by_line.items())]
    if rule.granularity is Granularity.FILE:
        return hits[:1]
    return hits


def code_snippet(lines: list[str], line: int, context: int = SNIPPET_CONTEXT) -> str:
    start = max(1, line - context)
    end = min(len(lines), line + context)
    width = len(str(end))
    rendered = []
    for number in range(start, end + 1):
        marker = ">>>" if number == line else "   "
        rendered.append(f"{marker} {number:>{width}} | {lines[number - 1]}")
    return "\n".join(rendered)


def _truncate(value: str, limit: int = MAX_EVIDENCE_CHARS) -> str:
    return value if len(value) <= limit else value[: limit - 3] + "..."


def _scan_text(path: str, text: str, file_class: FileClass, catalog: RuleCatalog) -> list[dict[str, object]]:
    # Config files are checked with the script rules.
    rule_class = FileClass.SCRIPTS if file_class is FileClass.CONFIG else file_class
    lines = text.splitlines()
    skip = _comment_lines(lines) if rule_class is FileClass.SCRIPTS else set()

    records: list[dict[str, object]] = []
    for rule in catalog.pattern_rules(rule_class):
        for hit in _rule_hits(rule, text, lines, skip):
            records.append(
                {
                    "category": rule.category,
                    "severity": rule.severity,
                    "title": rule.name,
                    "description": rule.description,
                    "file": path,
                    "line": hit.line,
                    "code_snippet": code_snippet(lines, hit.line) if lines else None,
                    "recommendation": rule.recommendation,
                    "rule_id": rule.id,
                    "evidence": _truncate(hit.evidence),
                }
            )

    for issue in check_dependency_file(path, text, catalog.dependencies):
        records.append(
            {
                "category": issue.category,
                "severity": issue.severity,
                "title": issue.title,
                "description": issue.description,
                "file": path,
                "line": issue.line,
                "code_snippet": code_snippet(lines, issue.line) if issue.line else None,
                "recommendation": issue.recommendation,
            }
        )
    return records


def scan_files(
    files: list[PackageFile],
    catalog: RuleCatalog | None = None,
    policy: ScoringPolicy | None = None,
) -> SecurityReport:
    catalog = catalog or load_catalog()

    records: list[dict[str, object]] = []
    analyzed = 0
    skipped: list[str] = []
    for file in sorted(files, key=lambda item: item.path):
        file_class = classify(file)
        if file_class in (FileClass.BINARY, FileClass.OTHER):
            skipped.append(file.path)
            continue
        analyzed += 1
        records.extend(_scan_text(file.path, decode_text(file), file_class, catalog))

    findings = [
        Finding(id=f"pattern-{index:04d}", source=Source.PATTERN, **record)  # type: ignore[arg-type]
        for index, record in enumerate(records, start=1)
    ]
    summary, value, level = evaluate(findings, policy)
    logger.info("Pattern scan: %s files, %s findings, score %s (%s)", analyzed, len(findings), value, level)
    return SecurityReport(
        findings=findings,
        summary=summary,
        score=value,
        risk_level=level,
        analyzed_files=analyzed,
        skipped_files=skipped,
    )


def scan_error_report(message: str) -> SecurityReport:
    finding = Finding(
        id="pattern-0001",
        source=Source.PATTERN,
        category=SCAN_ERROR_CATEGORY,
        severity=Severity.CRITICAL,
        title="Failed to scan skill package",
        description=message,
        recommendation="Ensure the skill package is a valid ZIP file",
    )
    return SecurityReport(
        findings=[finding],
        summary=SeveritySummary(critical=1),
        score=0,
        risk_level=RiskLevel.CRITICAL,
    )


def scan_archive(
    data: bytes,
    catalog: RuleCatalog | None = None,
    policy: ScoringPolicy | None = None,
) -> SecurityReport:
    try:
        files = read_archive(data)
    except ArchiveError as exc:
        logger.warning("Pattern scan failed: %s", exc)
        return scan_error_report(str(exc))
    return scan_files(files, catalog, policy)
