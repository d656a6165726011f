from __future__ import annotations

import asyncio
import logging
import shutil
import signal
import sqlite3
import uuid
from pathlib import Path

import httpx
import typer
from rich.console import Console
from rich.table import Table

from skill_trust import __version__
from skill_trust.analyzers.ai_analyzer import analyze as run_ai_analysis
from skill_trust.config import Settings, load_settings
from skill_trust.evaluation.queue import EvaluationQueue
from skill_trust.exceptions import ArchiveError, QueueError, RuleCatalogError
from skill_trust.models.evaluation import TestConfig
from skill_trust.models.findings import SEVERITY_ORDER, Severity
from skill_trust.models.reports import CombinedRiskAssessment
from skill_trust.output.console import render_assessment, render_jobs
from skill_trust.output.json_export import export_json_report
from skill_trust.output.sarif_export import export_sarif_report
from skill_trust.pipeline.processor import VersionProcessor, find_test_config
from skill_trust.pipeline.reanalysis import ReanalysisScope, ScopeType, reanalyze
from skill_trust.pipeline.supervisor import PipelineSupervisor
from skill_trust.providers import LLMProvider, available_providers, create_provider
from skill_trust.rules.catalog import RuleCatalog, load_catalog
from skill_trust.sandbox.runner import SandboxRunner
from skill_trust.scanning.files import pack_directory, read_archive, read_directory
from skill_trust.scanning.pattern_scanner import scan_archive
from skill_trust.scoring.merge import NO_AI_REPORT, NO_PATTERN_REPORT, combined_for_version, merge
from skill_trust.storage.audit import AuditLog
from skill_trust.storage.store import TrustStore

app = typer.Typer(
    help=(
        "Assess the trustworthiness of AI skill packages: pattern scan, AI review and sandboxed evaluation. "
        "Use `doctor` for setup hints (OPENAI_API_KEY, ANTHROPIC_API_KEY, SKILLTRUST_DB)."
    ),
    no_args_is_help=True,
)
console = Console()
logger = logging.getLogger(__name__)

FORMATS = ("table", "json", "sarif")


@app.callback(invoke_without_command=True)
def callback(
    version: bool = typer.Option(False, "--version", help="Show version and exit.", is_eager=True)
) -> None:
    if version:
        console.print(__version__)
        raise typer.Exit()


@app.command()
def scan(
    path: Path = typer.Argument(..., exists=True, help="Skill package: a ZIP archive or a directory."),
    ai: bool = typer.Option(False, "--ai", help="Also run the AI review and merge both results."),
    provider: str | None = typer.Option(None, help="AI provider (env: SKILLTRUST_PROVIDER)."),
    model: str | None = typer.Option(None, help="Model name (env: SKILLTRUST_MODEL)."),
    rules: Path | None = typer.Option(None, help="Rule catalog YAML (env: SKILLTRUST_RULES)."),
    fail_on: Severity | None = typer.Option(None, help="Exit non-zero if any finding >= severity."),
    format: str = typer.Option("table", help="table|json|sarif"),
    output: str | None = typer.Option(None, help="Optional output file path."),
    no_color: bool = typer.Option(False, help="Disable color output."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logs."),
) -> None:
    _configure_logging(verbose)
    _check_format(format)
    settings = load_settings(provider=provider, model=model)
    catalog = _load_rules(rules, settings)
    data = _read_package(path)

    report = scan_archive(data, catalog, settings.scoring)
    ai_report = None
    if ai:
        provider_impl = _resolve_provider(settings)
        try:
            files = read_archive(data)
        except ArchiveError:
            files = []
        ai_report = asyncio.run(run_ai_analysis(files, catalog, provider_impl, settings.ai))

    assessment = merge(report, ai_report)
    if not ai:
        errors = [error for error in assessment.errors if error != NO_AI_REPORT]
        assessment = assessment.model_copy(update={"errors": errors})
    _emit(assessment, target=str(path), format=format, output=output, no_color=no_color)

    if fail_on and _has_failures(assessment, fail_on):
        raise typer.Exit(code=1)


@app.command()
def analyze(
    path: Path = typer.Argument(..., exists=True, help="Skill package: a ZIP archive or a directory."),
    provider: str | None = typer.Option(None, help="AI provider (env: SKILLTRUST_PROVIDER)."),
    model: str | None = typer.Option(None, help="Model name (env: SKILLTRUST_MODEL)."),
    rules: Path | None = typer.Option(None, help="Rule catalog YAML (env: SKILLTRUST_RULES)."),
    format: str = typer.Option("table", help="table|json"),
    output: str | None = typer.Option(None, help="Optional output file path."),
    no_color: bool = typer.Option(False, help="Disable color output."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logs."),
) -> None:
    """Run only the AI review of a package."""
    _configure_logging(verbose)
    settings = load_settings(provider=provider, model=model)
    catalog = _load_rules(rules, settings)
    try:
        files = read_directory(path) if path.is_dir() else read_archive(path.read_bytes())
    except ArchiveError as exc:
        console.print(f"Cannot read {path}: {exc}")
        raise typer.Exit(code=2) from exc

    report = asyncio.run(run_ai_analysis(files, catalog, _resolve_provider(settings), settings.ai))
    if format == "json":
        payload = export_json_report(report, output)
        if not output:
            console.print(payload)
        return

    assessment = merge(None, report)
    errors = [error for error in assessment.errors if error != NO_PATTERN_REPORT]
    assessment = assessment.model_copy(update={"errors": errors})
    render_assessment(assessment, target=str(path), no_color=no_color)
    for recommendation in report.recommendations:
        console.print(f"* {recommendation}")
    if report.error:
        raise typer.Exit(code=1)


@app.command()
def process(
    path: Path = typer.Argument(..., exists=True, help="Skill package: a ZIP archive or a directory."),
    version_id: str | None = typer.Option(None, "--version-id", help="Version id (default: a new UUID)."),
    skill_id: str | None = typer.Option(None, "--skill-id", help="Skill this version belongs to."),
    actor: str = typer.Option("cli", help="Actor recorded in the audit log."),
    evaluate: bool = typer.Option(False, "--evaluate", help="Run queued evaluations before exiting."),
    provider: str | None = typer.Option(None, help="AI provider (env: SKILLTRUST_PROVIDER)."),
    model: str | None = typer.Option(None, help="Model name (env: SKILLTRUST_MODEL)."),
    db: str | None = typer.Option(None, help="Database path (env: SKILLTRUST_DB)."),
    no_color: bool = typer.Option(False, help="Disable color output."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logs."),
) -> None:
    """Run a package through the full pipeline and persist the results."""
    _configure_logging(verbose)
    settings = load_settings(provider=provider, model=model, db_path=db)
    catalog = _load_rules(None, settings)
    data = _read_package(path)
    version_id = version_id or str(uuid.uuid4())

    with TrustStore(settings.db_path) as store:
        queue = EvaluationQueue(store, SandboxRunner(settings.sandbox), settings.queue)
        processor = VersionProcessor(
            store,
            settings=settings,
            catalog=catalog,
            provider=_resolve_provider(settings),
            queue=queue,
            audit=AuditLog(store, audit_url=settings.audit_url),
        )

        async def _run() -> None:
            supervisor = PipelineSupervisor(processor)
            supervisor.submit(version_id, data, skill_id=skill_id, actor=actor)
            await supervisor.shutdown()
            if evaluate:
                ran = await queue.run_pending()
                logger.info("Ran %s evaluation job(s)", ran)

        asyncio.run(_run())
        record = store.get_version(version_id)
        if record is None:
            console.print(f"Version {version_id} was deleted during processing.")
            raise typer.Exit(code=1)

        console.print(f"version={record.id} state={record.state.value}")
        for note in record.notes:
            console.print(f"- {note}")
        render_assessment(combined_for_version(store, version_id), target=str(path), no_color=no_color)
        jobs = store.jobs_for_version(version_id)
        if jobs:
            render_jobs(jobs, {job.id: store.results(job.id) for job in jobs}, no_color=no_color)


@app.command()
def status(
    version_id: str = typer.Argument(..., help="Version id."),
    db: str | None = typer.Option(None, help="Database path (env: SKILLTRUST_DB)."),
    format: str = typer.Option("table", help="table|json|sarif"),
    no_color: bool = typer.Option(False, help="Disable color output."),
) -> None:
    """Show the combined risk assessment and download headers of a version."""
    _check_format(format)
    settings = load_settings(db_path=db)
    with TrustStore(settings.db_path) as store:
        record = store.get_version(version_id)
        if record is None:
            console.print(f"Unknown version: {version_id}")
            raise typer.Exit(code=2)
        assessment = combined_for_version(store, version_id)

    if format != "table":
        _emit(assessment, target=version_id, format=format, output=None, no_color=no_color)
        return

    console.print(f"version={record.id} skill={record.skill_id or '-'} state={record.state.value}")
    for note in record.notes:
        console.print(f"- {note}")
    render_assessment(assessment, target=version_id, no_color=no_color)
    for header, value in assessment.headers().items():
        console.print(f"{header}: {value}")


@app.command()
def enqueue(
    version_id: str = typer.Argument(..., help="Version id."),
    tests: Path | None = typer.Option(None, exists=True, help="tests.json to use instead of the package's own."),
    priority: int | None = typer.Option(None, help="Lower runs first (default from [queue])."),
    db: str | None = typer.Option(None, help="Database path (env: SKILLTRUST_DB)."),
) -> None:
    """Queue an evaluation of a processed version."""
    settings = load_settings(db_path=db)
    with TrustStore(settings.db_path) as store:
        record = store.get_version(version_id)
        if record is None or not record.package_path:
            console.print(f"Version {version_id} has no stored package.")
            raise typer.Exit(code=2)

        try:
            if tests is not None:
                config = TestConfig.model_validate_json(tests.read_text(encoding="utf-8"))
            else:
                config = find_test_config(read_directory(Path(record.package_path)))
        except (ValueError, OSError) as exc:
            console.print(f"Invalid test configuration: {exc}")
            raise typer.Exit(code=2) from exc
        if config is None:
            console.print("No tests.json found.")
            raise typer.Exit(code=2)

        queue = EvaluationQueue(store, SandboxRunner(settings.sandbox), settings.queue)
        try:
            job_id = queue.enqueue(version_id, config, record.package_path, priority=priority)
        except QueueError as exc:
            console.print(str(exc))
            raise typer.Exit(code=1) from exc
    console.print(job_id)


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Process the pending jobs and exit."),
    concurrency: int | None = typer.Option(None, min=1, help="Parallel jobs (default from [queue])."),
    db: str | None = typer.Option(None, help="Database path (env: SKILLTRUST_DB)."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logs."),
) -> None:
    """Run the evaluation worker pool until SIGINT/SIGTERM."""
    _configure_logging(verbose)
    settings = load_settings(db_path=db)
    queue_settings = settings.queue
    if concurrency is not None:
        queue_settings = queue_settings.model_copy(update={"concurrency": concurrency})

    with TrustStore(settings.db_path) as store:
        queue = EvaluationQueue(store, SandboxRunner(settings.sandbox), queue_settings)
        redelivered, failed = queue.recover()
        if redelivered or failed:
            console.print(f"Recovered interrupted jobs: redelivered={redelivered} failed={failed}")

        if once:
            processed = asyncio.run(queue.run_pending())
            console.print(f"Processed {processed} job(s)")
            return

        async def _serve() -> None:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            queue.start()
            console.print(f"Worker pool started (concurrency={queue_settings.concurrency}); Ctrl+C to stop.")
            await stop.wait()
            console.print("Draining in-flight jobs...")
            await queue.shutdown(drain=True)

        asyncio.run(_serve())


@app.command()
def jobs(
    version_id: str = typer.Argument(..., help="Version id."),
    db: str | None = typer.Option(None, help="Database path (env: SKILLTRUST_DB)."),
    format: str = typer.Option("table", help="table|json"),
    no_color: bool = typer.Option(False, help="Disable color output."),
) -> None:
    """Show the evaluation history of a version, newest first."""
    settings = load_settings(db_path=db)
    with TrustStore(settings.db_path) as store:
        history = store.jobs_for_version(version_id)
        results = {job.id: store.results(job.id) for job in history}

    if format == "json":
        console.print_json(
            data=[
                {
                    **job.model_dump(mode="json", exclude={"test_config"}),
                    "results": [result.model_dump(mode="json") for result in results[job.id]],
                }
                for job in history
            ]
        )
        return
    if not history:
        console.print(f"No evaluation jobs for {version_id}.")
        return
    render_jobs(history, results, no_color=no_color)


@app.command()
def delete(
    version_id: str = typer.Argument(..., help="Version id."),
    db: str | None = typer.Option(None, help="Database path (env: SKILLTRUST_DB)."),
) -> None:
    """Delete a version; its queued evaluations are dropped when claimed."""
    settings = load_settings(db_path=db)
    with TrustStore(settings.db_path) as store:
        if not store.delete_version(version_id):
            console.print(f"Unknown version: {version_id}")
            raise typer.Exit(code=2)
    console.print(f"Deleted {version_id}")


@app.command(name="reanalyze")
def reanalyze_command(
    skill: list[str] = typer.Option([], "--skill", help="Skill id, repeat for multiple."),
    version: list[str] = typer.Option([], "--version-id", help="Version id, repeat for multiple."),
    pattern_scan: bool = typer.Option(False, "--pattern-scan", help="Also re-run the pattern scan."),
    actor: str = typer.Option("cli", help="Actor recorded in the audit log."),
    provider: str | None = typer.Option(None, help="AI provider (env: SKILLTRUST_PROVIDER)."),
    model: str | None = typer.Option(None, help="Model name (env: SKILLTRUST_MODEL)."),
    db: str | None = typer.Option(None, help="Database path (env: SKILLTRUST_DB)."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logs."),
) -> None:
    """Re-run the AI review for stored versions (at most 50 per call)."""
    _configure_logging(verbose)
    if skill and version:
        console.print("Use either --skill or --version-id, not both.")
        raise typer.Exit(code=2)
    scope_type = ScopeType.VERSIONS if version else ScopeType.SKILLS if skill else ScopeType.ALL
    scope = ReanalysisScope(type=scope_type, skill_ids=skill, version_ids=version, include_pattern_scan=pattern_scan)

    settings = load_settings(provider=provider, model=model, db_path=db)
    catalog = _load_rules(None, settings)
    with TrustStore(settings.db_path) as store:
        result = asyncio.run(
            reanalyze(
                store,
                scope,
                actor,
                settings=settings,
                catalog=catalog,
                provider=_resolve_provider(settings),
                audit=AuditLog(store, audit_url=settings.audit_url),
            )
        )

    console.print(f"Processed {result.processed}, failed {result.failed}")
    for outcome in result.outcomes:
        detail = outcome.risk_level.value if outcome.risk_level else outcome.error
        console.print(f"- {outcome.version_id}: {'ok' if outcome.succeeded else 'failed'} ({detail})")
    if result.failed:
        raise typer.Exit(code=1)


@app.command(name="rules")
def list_rules(
    rules: Path | None = typer.Option(None, help="Rule catalog YAML (env: SKILLTRUST_RULES)."),
) -> None:
    settings = load_settings()
    catalog = _load_rules(rules, settings)
    table = Table(title=f"Rule catalog {catalog.version}")
    table.add_column("Id")
    table.add_column("Category")
    table.add_column("Severity")
    table.add_column("Applies to")
    table.add_column("Mode")
    for rule in catalog.rules:
        table.add_row(
            rule.id,
            rule.category,
            rule.severity.value,
            ",".join(item.value for item in rule.applies_to),
            "ai" if rule.ai_only else "pattern+ai",
        )
    console.print(table)
    console.print(f"{len(catalog.rules)} rules, {len(catalog.dependencies)} known vulnerable dependencies")


@app.command()
def providers() -> None:
    names = available_providers()
    if not names:
        console.print("No providers are currently registered.")
        return
    console.print("Available providers:")
    for name in names:
        console.print(f"- {name}")


@app.command()
def doctor(
    provider: str | None = typer.Option(None, help="Provider name override (env: SKILLTRUST_PROVIDER)."),
    model: str | None = typer.Option(None, help="Model override (env: SKILLTRUST_MODEL)."),
    db: str | None = typer.Option(None, help="Database path (env: SKILLTRUST_DB)."),
    check: bool = typer.Option(False, "--check", help="Run live provider, sandbox and storage checks."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logs."),
) -> None:
    _configure_logging(verbose)
    settings = load_settings(provider=provider, model=model, db_path=db)

    console.print(f"provider={settings.provider}")
    console.print(f"model={settings.model}")
    console.print(f"db={settings.db_path}")
    console.print(f"sandbox={settings.sandbox.backend}")
    console.print(f"OPENAI_API_KEY={'set' if settings.openai_api_key else 'missing'}")
    console.print(f"ANTHROPIC_API_KEY={'set' if settings.anthropic_api_key else 'missing'}")
    console.print(f"SKILLTRUST_AUDIT_URL={settings.audit_url or 'unset'}")
    console.print("Hints:")
    console.print("- Set a provider key: export OPENAI_API_KEY=... or ANTHROPIC_API_KEY=...")
    console.print("- Without a key the AI review reports risk 'unknown'; the pattern scan still runs.")
    console.print("- Settings can also live in ./skill-trust.toml or ~/.config/skill-trust/config.toml.")

    if not check:
        return

    checks = [
        ("Provider", _check_provider(settings)),
        ("Sandbox", _check_sandbox(settings)),
        ("Database", _check_database(settings.db_path)),
    ]
    if settings.audit_url:
        checks.append(("Audit sink", _check_audit(settings.audit_url)))
    else:
        console.print("Audit sink check: SKIP - SKILLTRUST_AUDIT_URL is unset")

    failures = 0
    for label, (ok, message) in checks:
        console.print(f"{label} check: {'PASS' if ok else 'FAIL'} - {message}")
        if not ok:
            failures += 1

    logger.info("doctor --check completed: checks_run=%s failures=%s", len(checks), failures)
    if failures > 0:
        raise typer.Exit(code=1)


def _configure_logging(verbose: bool) -> None:
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _check_format(format: str) -> None:
    if format not in FORMATS:
        console.print(f"Unsupported format: {format}. Use one of: {', '.join(FORMATS)}")
        raise typer.Exit(code=2)


def _load_rules(path: Path | None, settings: Settings) -> RuleCatalog:
    try:
        return load_catalog(path or settings.rules_path)
    except RuleCatalogError as exc:
        console.print(str(exc))
        raise typer.Exit(code=2) from exc


def _read_package(path: Path) -> bytes:
    if path.is_dir():
        return pack_directory(path)
    return path.read_bytes()


def _resolve_provider(settings: Settings) -> LLMProvider | None:
    api_key = settings.api_key_for(settings.provider)
    if not api_key:
        console.print(
            f"AI analysis unavailable: no API key for provider '{settings.provider}'. "
            "The AI risk level will be reported as unknown."
        )
        return None
    try:
        return create_provider(settings.provider, api_key, settings.model, settings.ai)
    except ValueError as exc:
        console.print(str(exc))
        raise typer.Exit(code=2) from exc


def _emit(
    assessment: CombinedRiskAssessment,
    *,
    target: str,
    format: str,
    output: str | None,
    no_color: bool,
) -> None:
    if format == "json":
        payload = export_json_report(assessment, output)
        if not output:
            console.print(payload)
    elif format == "sarif":
        payload = export_sarif_report(assessment, output)
        if not output:
            console.print(payload)
    else:
        render_assessment(assessment, target=target, no_color=no_color)
        if output:
            Path(output).write_text(export_json_report(assessment), encoding="utf-8")


def _has_failures(assessment: CombinedRiskAssessment, threshold: Severity) -> bool:
    return any(SEVERITY_ORDER[finding.severity] >= SEVERITY_ORDER[threshold] for finding in assessment.findings)


def _check_provider(settings: Settings) -> tuple[bool, str]:
    api_key = settings.api_key_for(settings.provider)
    if settings.provider == "openai":
        return _check_openai(api_key, settings.model)
    if settings.provider == "anthropic":
        return _check_anthropic(api_key, settings.model)
    return False, f"No live check for provider '{settings.provider}'"


def _check_openai(api_key: str | None, model: str) -> tuple[bool, str]:
    if not api_key:
        return False, "OPENAI_API_KEY is missing"

    try:
        from openai import OpenAI
    except ImportError:
        return False, "openai package is not installed (install skill-trust[openai])"

    try:
        client = OpenAI(api_key=api_key)
        client.models.retrieve(model)
    except Exception as exc:
        return False, f"OpenAI check failed: {exc}"

    return True, f"Model '{model}' is accessible"


def _check_anthropic(api_key: str | None, model: str) -> tuple[bool, str]:
    if not api_key:
        return False, "ANTHROPIC_API_KEY is missing"

    try:
        from anthropic import Anthropic
    except ImportError:
        return False, "anthropic package is not installed (install skill-trust[anthropic])"

    try:
        client = Anthropic(api_key=api_key)
        client.models.retrieve(model)
    except Exception as exc:
        return False, f"Anthropic check failed: {exc}"

    return True, f"Model '{model}' is accessible"


def _check_sandbox(settings: Settings) -> tuple[bool, str]:
    sandbox = settings.sandbox
    if sandbox.backend == "docker":
        binary = shutil.which(sandbox.docker_binary)
        if binary is None:
            return False, f"docker binary '{sandbox.docker_binary}' not found on PATH"
        return True, f"docker found at {binary} (image {sandbox.image})"
    if sandbox.backend == "process":
        if sandbox.unshare_binary and shutil.which(sandbox.unshare_binary) is None:
            return False, f"'{sandbox.unshare_binary}' not found; set sandbox.unshare_binary = \"\" to run without it"
        return True, "process backend available"
    return False, f"Unsupported sandbox backend: {sandbox.backend}"


def _check_database(db_path: str) -> tuple[bool, str]:
    try:
        with TrustStore(db_path) as store:
            count = len(store.list_versions(limit=1_000_000))
    except (sqlite3.Error, OSError) as exc:
        return False, f"Cannot open {db_path}: {exc}"
    return True, f"{db_path} holds {count} version(s)"


def _check_audit(url: str) -> tuple[bool, str]:
    try:
        response = httpx.get(url, timeout=10.0)
    except httpx.HTTPError as exc:
        return False, f"Audit sink unreachable: {exc}"

    if response.status_code < 500:
        return True, f"Audit sink responded with status {response.status_code}"
    return False, f"Audit sink returned status {response.status_code}"

