from __future__ import annotations

import pytest

from skill_trust.config import DEFAULT_MODEL, load_settings
from skill_trust.models.findings import Severity

ENV_VARS = (
    "SKILLTRUST_PROVIDER",
    "SKILLTRUST_MODEL",
    "SKILLTRUST_DB",
    "SKILLTRUST_RULES",
    "SKILLTRUST_AUDIT_URL",
    "SKILLTRUST_PACKAGES_DIR",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
)


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)


def test_defaults() -> None:
    settings = load_settings()

    assert settings.provider == "openai"
    assert settings.model == DEFAULT_MODEL
    assert settings.openai_api_key is None
    assert settings.queue.concurrency == 2
    assert settings.sandbox.backend == "docker"
    assert settings.scoring.penalties[Severity.CRITICAL] == 25


def test_config_file_sections(tmp_path) -> None:
    (tmp_path / "skill-trust.toml").write_text(
        'provider = "anthropic"\n'
        'db_path = "/data/trust.db"\n'
        "[queue]\n"
        "concurrency = 4\n"
        "[scoring]\n"
        "low_threshold = 95\n"
        "[sandbox]\n"
        'backend = "process"\n',
        encoding="utf-8",
    )

    settings = load_settings()

    assert settings.provider == "anthropic"
    assert settings.db_path == "/data/trust.db"
    assert settings.queue.concurrency == 4
    assert settings.scoring.low_threshold == 95
    assert settings.sandbox.backend == "process"


def test_environment_overrides_file_and_arguments_override_environment(tmp_path, monkeypatch) -> None:
    (tmp_path / "skill-trust.toml").write_text('provider = "anthropic"\nmodel = "from-file"\n', encoding="utf-8")
    monkeypatch.setenv("SKILLTRUST_MODEL", "from-env")
    monkeypatch.setenv("SKILLTRUST_DB", "/env/trust.db")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "secret")

    settings = load_settings(db_path="/arg/trust.db")

    assert settings.provider == "anthropic"
    assert settings.model == "from-env"
    assert settings.db_path == "/arg/trust.db"
    assert settings.api_key_for("anthropic") == "secret"
    assert settings.api_key_for("unknown") is None
    assert load_settings(model="from-arg").model == "from-arg"


def test_invalid_section_is_rejected(tmp_path) -> None:
    (tmp_path / "skill-trust.toml").write_text("[queue]\nconcurrency = 0\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid skill-trust configuration"):
        load_settings()


def test_unreadable_config_file_is_ignored(tmp_path) -> None:
    (tmp_path / "skill-trust.toml").write_text("provider = [", encoding="utf-8")
    assert load_settings().provider == "openai"
