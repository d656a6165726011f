from __future__ import annotations

import json

import pytest
from conftest import SAFE_SCRIPT, SAFE_SKILL_MD, FakeRunner, build_zip, tests_json
from typer.testing import CliRunner

import skill_trust.cli as cli_module
from skill_trust.cli import app

runner = CliRunner()


@pytest.fixture
def cli_settings(monkeypatch, settings):
    monkeypatch.setattr(cli_module, "load_settings", lambda **_: settings)
    return settings


@pytest.fixture
def skill_dir(tmp_path):
    root = tmp_path / "greeter"
    (root / "scripts").mkdir(parents=True)
    (root / "SKILL.md").write_text(SAFE_SKILL_MD, encoding="utf-8")
    (root / "scripts" / "main.py").write_text(SAFE_SCRIPT, encoding="utf-8")
    (root / "tests.json").write_text(tests_json("ada", "bob"), encoding="utf-8")
    return root


def test_providers_command() -> None:
    result = runner.invoke(app, ["providers"])
    assert result.exit_code == 0
    assert "openai" in result.stdout
    assert "anthropic" in result.stdout


def test_doctor_command(cli_settings) -> None:
    result = runner.invoke(app, ["doctor"])
    assert result.exit_code == 0
    assert "provider=openai" in result.stdout
    assert "OPENAI_API_KEY=missing" in result.stdout


def test_rules_command(cli_settings) -> None:
    result = runner.invoke(app, ["rules"])
    assert result.exit_code == 0
    assert "known vulnerable dependencies" in result.stdout


def test_scan_clean_directory(cli_settings, skill_dir, tmp_path) -> None:
    output = tmp_path / "report.json"
    result = runner.invoke(app, ["scan", str(skill_dir), "--format", "json", "--output", str(output)])

    assert result.exit_code == 0
    payload = json.loads(output.read_text(encoding="utf-8"))
    assert payload["risk_level"] == "low"
    assert payload["findings"] == []
    assert payload["errors"] == []


def test_scan_fail_on_threshold(cli_settings, skill_dir) -> None:
    (skill_dir / "scripts" / "main.py").write_text("import sys\nprint(eval(sys.stdin.read()))\n", encoding="utf-8")

    assert runner.invoke(app, ["scan", str(skill_dir), "--fail-on", "critical"]).exit_code == 0
    result = runner.invoke(app, ["scan", str(skill_dir), "--fail-on", "high"])
    assert result.exit_code == 1


def test_scan_sarif_output(cli_settings, skill_dir, tmp_path) -> None:
    (skill_dir / "scripts" / "main.py").write_text("print(eval(input()))\n", encoding="utf-8")
    output = tmp_path / "report.sarif"

    result = runner.invoke(app, ["scan", str(skill_dir), "--format", "sarif", "--output", str(output)])

    assert result.exit_code == 0
    sarif = json.loads(output.read_text(encoding="utf-8"))
    run = sarif["runs"][0]
    assert run["tool"]["driver"]["name"] == "skill-trust"
    assert run["results"][0]["ruleId"] == "skill-trust/script-dynamic-code-execution"
    assert run["results"][0]["level"] == "error"


def test_scan_corrupt_archive(cli_settings, tmp_path) -> None:
    archive = tmp_path / "broken.zip"
    archive.write_bytes(b"definitely not a zip")
    output = tmp_path / "report.json"

    result = runner.invoke(app, ["scan", str(archive), "--format", "json", "--output", str(output)])

    assert result.exit_code == 0
    payload = json.loads(output.read_text(encoding="utf-8"))
    assert payload["risk_level"] == "critical"
    assert payload["findings"][0]["category"] == "Scan Error"


def test_scan_rejects_unknown_format(cli_settings, skill_dir) -> None:
    result = runner.invoke(app, ["scan", str(skill_dir), "--format", "xml"])
    assert result.exit_code == 2


def test_analyze_without_key_reports_unknown(cli_settings, skill_dir) -> None:
    result = runner.invoke(app, ["analyze", str(skill_dir)])

    assert result.exit_code == 1
    assert "AI analysis unavailable" in result.stdout


def test_process_status_jobs_and_worker(cli_settings, skill_dir, monkeypatch) -> None:
    result = runner.invoke(app, ["process", str(skill_dir), "--version-id", "v1", "--skill-id", "greeter"])
    assert result.exit_code == 0, result.stdout
    assert "state=PROCESSING_COMPLETE" in result.stdout

    status = runner.invoke(app, ["status", "v1"])
    assert status.exit_code == 0
    assert "X-Security-Risk-Level: low" in status.stdout
    assert "X-Security-Warning: false" in status.stdout

    jobs = runner.invoke(app, ["jobs", "v1", "--format", "json"])
    assert jobs.exit_code == 0
    assert "PENDING" in jobs.stdout

    monkeypatch.setattr(cli_module, "SandboxRunner", lambda *_args, **_kwargs: FakeRunner())
    worker = runner.invoke(app, ["worker", "--once"])
    assert worker.exit_code == 0
    assert "Processed 1 job(s)" in worker.stdout

    jobs = runner.invoke(app, ["jobs", "v1", "--format", "json"])
    assert "COMPLETED" in jobs.stdout


def test_enqueue_and_delete(cli_settings, skill_dir) -> None:
    runner.invoke(app, ["process", str(skill_dir), "--version-id", "v1"])

    result = runner.invoke(app, ["enqueue", "v1", "--priority", "1"])
    assert result.exit_code == 0

    deleted = runner.invoke(app, ["delete", "v1"])
    assert deleted.exit_code == 0
    assert runner.invoke(app, ["status", "v1"]).exit_code == 2


def test_process_archive_file(cli_settings, tmp_path) -> None:
    archive = tmp_path / "skill.zip"
    archive.write_bytes(build_zip({"SKILL.md": SAFE_SKILL_MD}))

    result = runner.invoke(app, ["process", str(archive), "--version-id", "zip-1"])

    assert result.exit_code == 0
    assert "version=zip-1" in result.stdout


def test_status_unknown_version(cli_settings) -> None:
    result = runner.invoke(app, ["status", "missing"])
    assert result.exit_code == 2
    assert "Unknown version" in result.stdout


def test_reanalyze_with_nothing_stored(cli_settings) -> None:
    result = runner.invoke(app, ["reanalyze"])
    assert result.exit_code == 0
    assert "Processed 0, failed 0" in result.stdout


def test_reanalyze_rejects_mixed_scope(cli_settings) -> None:
    result = runner.invoke(app, ["reanalyze", "--skill", "s1", "--version-id", "v1"])
    assert result.exit_code == 2
