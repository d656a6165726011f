from __future__ import annotations

from rich.console import Console
from rich.table import Table

from skill_trust.models.evaluation import EvaluationJob, TestResult, TestStatus
from skill_trust.models.reports import CombinedRiskAssessment, RiskLevel

RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
    RiskLevel.UNKNOWN: "magenta",
}


def _risk(level: RiskLevel) -> str:
    return f"[{RISK_STYLES[level]}]{level.value.upper()}[/]"


def render_assessment(
    assessment: CombinedRiskAssessment,
    *,
    target: str,
    no_color: bool = False,
    console: Console | None = None,
) -> None:
    console = console or Console(no_color=no_color)
    table = Table(title=f"skill-trust results: {target}")
    table.add_column("Severity")
    table.add_column("Source")
    table.add_column("Category")
    table.add_column("Title")
    table.add_column("Location")

    for finding in assessment.findings:
        location = finding.file or "-"
        if finding.file and finding.line:
            location = f"{finding.file}:{finding.line}"
        table.add_row(
            finding.severity.value.upper(),
            finding.source.value,
            finding.category,
            finding.title,
            location,
        )

    console.print(table)
    score = "n/a" if assessment.score is None else str(assessment.score)
    console.print(
        f"Risk: {_risk(assessment.risk_level)}  "
        f"(pattern {_risk(assessment.pattern_risk_level)}, AI {_risk(assessment.ai_risk_level)})  Score: {score}"
    )
    summary = assessment.summary
    console.print(
        f"Findings: {summary.total} (critical={summary.critical} high={summary.high} "
        f"medium={summary.medium} low={summary.low} info={summary.info})"
    )
    if assessment.warning:
        console.print("[bold red]Warning: this skill is high risk. Review the findings before installing.[/]")
    for error in assessment.errors:
        console.print(f"- {error}")


def render_jobs(
    jobs: list[EvaluationJob],
    results: dict[str, list[TestResult]],
    *,
    no_color: bool = False,
    console: Console | None = None,
) -> None:
    console = console or Console(no_color=no_color)
    table = Table(title="Evaluation jobs")
    table.add_column("Job")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Passed", justify="right")
    table.add_column("Tests", justify="right")
    table.add_column("Created")

    for job in jobs:
        job_results = results.get(job.id, [])
        passed = sum(1 for result in job_results if result.status is TestStatus.PASSED)
        table.add_row(
            job.id,
            job.status.value,
            str(job.priority),
            str(job.attempts),
            str(passed),
            str(len(job.test_cases)),
            job.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)

    for job in jobs:
        if job.error:
            console.print(f"- {job.id}: {job.error}")
