from __future__ import annotations

import asyncio
import json

import pytest
from conftest import SAFE_SCRIPT, SAFE_SKILL_MD, FakeProvider

from skill_trust.analyzers.ai_analyzer import analyze, build_request, parse_response, strip_code_fence
from skill_trust.config import AISettings
from skill_trust.exceptions import AIResponseError
from skill_trust.models.files import PackageFile
from skill_trust.models.findings import Severity, Source
from skill_trust.models.reports import RiskLevel

RESPONSE = {
    "riskLevel": "high",
    "confidence": 80,
    "recommendations": ["Remove the eval call"],
    "findings": [
        {
            "ruleId": "script-dynamic-code-execution",
            "severity": "HIGH",
            "category": "Code Injection",
            "title": "eval on user input",
            "file": "scripts/main.py",
            "line": 3,
            "evidence": "eval(data)",
            "description": "Input is evaluated.",
            "harm": "Arbitrary code execution.",
            "confidence": 90,
        }
    ],
}


def _files() -> list[PackageFile]:
    return [
        PackageFile(path="SKILL.md", content=SAFE_SKILL_MD.encode("utf-8")),
        PackageFile(path="scripts/main.py", content=SAFE_SCRIPT.encode("utf-8")),
    ]


def test_strip_code_fence() -> None:
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


def test_parse_response_rejects_unknown_risk_level() -> None:
    with pytest.raises(AIResponseError):
        parse_response('{"riskLevel": "unknown", "findings": []}')


def test_parse_response_rejects_non_object() -> None:
    with pytest.raises(AIResponseError):
        parse_response("[1, 2]")


def test_analyze_maps_findings(catalog) -> None:
    provider = FakeProvider(["```json\n" + json.dumps(RESPONSE) + "\n```"])

    report = asyncio.run(analyze(_files(), catalog, provider))

    assert report.error is None
    assert report.risk_level == RiskLevel.HIGH
    assert report.confidence == 80
    assert report.recommendations == ["Remove the eval call"]
    assert report.analyzed_files == 2
    assert report.summary.high == 1
    finding = report.findings[0]
    assert finding.id == "ai-0001"
    assert finding.source == Source.AI
    assert finding.severity == Severity.HIGH
    assert finding.rule_id == "script-dynamic-code-execution"
    assert finding.description.endswith("Harm: Arbitrary code execution.")


def test_prompt_contains_files_and_rules(catalog) -> None:
    provider = FakeProvider()
    asyncio.run(analyze(_files(), catalog, provider))

    _, user = provider.calls[0]
    assert "--- FILE: SKILL.md ---" in user
    assert "--- FILE: scripts/main.py ---" in user
    assert "ID: script-dynamic-code-execution" in user


def test_malformed_response_is_unknown(catalog) -> None:
    report = asyncio.run(analyze(_files(), catalog, FakeProvider(["I think this skill is fine."])))

    assert report.risk_level == RiskLevel.UNKNOWN
    assert report.error is not None
    assert report.raw_response == "I think this skill is fine."
    assert report.findings == []


def test_provider_failure_is_unknown(catalog) -> None:
    report = asyncio.run(analyze(_files(), catalog, FakeProvider([RuntimeError("connection reset")])))

    assert report.risk_level == RiskLevel.UNKNOWN
    assert "connection reset" in (report.error or "")


def test_missing_provider_is_unknown(catalog) -> None:
    report = asyncio.run(analyze(_files(), catalog, None))

    assert report.risk_level == RiskLevel.UNKNOWN
    assert report.error == "No AI provider configured"


def test_package_without_analysable_files_skips_the_call(catalog) -> None:
    provider = FakeProvider()
    png = PackageFile(path="logo.png", content=b"\x89PNG\r\n\x1a\n")

    report = asyncio.run(analyze([png], catalog, provider))

    assert provider.calls == []
    assert report.risk_level == RiskLevel.LOW
    assert report.error is None


def test_files_over_the_size_limit_are_skipped(catalog) -> None:
    limits = AISettings(max_file_bytes=300, max_total_bytes=1000)
    big = PackageFile(path="scripts/big.py", content=b"x = 1\n" * 100)

    request = build_request([*_files(), big], catalog, limits)

    assert request.skipped_due_to_limit == ["scripts/big.py"]
    assert request.included_files == 2
    assert "scripts/big.py" in request.user


def test_all_files_over_the_limit_is_unknown(catalog) -> None:
    provider = FakeProvider()
    limits = AISettings(max_file_bytes=10)

    report = asyncio.run(analyze(_files(), catalog, provider, limits))

    assert provider.calls == []
    assert report.risk_level == RiskLevel.UNKNOWN
    assert report.error is not None
