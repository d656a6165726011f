from __future__ import annotations

import json
from pathlib import Path

from skill_trust import __version__
from skill_trust.models.reports import CombinedRiskAssessment

LEVEL_MAP = {
    "critical": "error",
    "high": "error",
    "medium": "warning",
    "low": "note",
    "info": "note",
}


def _rule_id(category: str, rule_id: str | None) -> str:
    if rule_id:
        return f"skill-trust/{rule_id}"
    return "skill-trust/" + category.lower().replace(" ", "-")


def export_sarif_report(assessment: CombinedRiskAssessment, output: str | None = None) -> str:
    results: list[dict[str, object]] = []
    rules: dict[str, dict[str, object]] = {}

    for finding in assessment.findings:
        rule_id = _rule_id(finding.category, finding.rule_id)
        rules.setdefault(
            rule_id,
            {
                "id": rule_id,
                "name": finding.title,
                "shortDescription": {"text": finding.title},
                "properties": {"category": finding.category},
            },
        )
        result: dict[str, object] = {
            "ruleId": rule_id,
            "level": LEVEL_MAP[finding.severity.value],
            "message": {"text": finding.description},
            "properties": {"source": finding.source.value, "severity": finding.severity.value},
        }
        if finding.file:
            result["locations"] = [
                {
                    "physicalLocation": {
                        "artifactLocation": {"uri": finding.file},
                        "region": {"startLine": finding.line or 1},
                    }
                }
            ]
        results.append(result)

    sarif = {
        "$schema": "https://json.schemastore.org/sarif-2.1.0.json",
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": "skill-trust",
                        "version": __version__,
                        "rules": list(rules.values()),
                    }
                },
                "results": results,
                "properties": {"riskLevel": assessment.risk_level.value, "score": assessment.score},
            }
        ],
    }

    payload = json.dumps(sarif, indent=2)
    if output:
        Path(output).write_text(payload, encoding="utf-8")
    return payload
