from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, cast

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from skill_trust.models.findings import Severity

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5.2"

DEFAULT_PENALTIES = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.LOW: 3,
    Severity.INFO: 0,
}


class ScoringPolicy(BaseModel):
    penalties: dict[Severity, int] = Field(default_factory=lambda: dict(DEFAULT_PENALTIES))
    # Minimum score for each level, checked from the top.
    low_threshold: int = 90
    medium_threshold: int = 70
    high_threshold: int = 50

    @field_validator("penalties", mode="after")
    @classmethod
    def _fill_missing_penalties(cls, value: dict[Severity, int]) -> dict[Severity, int]:
        return {**DEFAULT_PENALTIES, **value}

    @model_validator(mode="after")
    def _check_thresholds(self) -> ScoringPolicy:
        if not self.low_threshold >= self.medium_threshold >= self.high_threshold:
            raise ValueError("scoring thresholds must satisfy low >= medium >= high")
        return self


class AISettings(BaseModel):
    max_file_bytes: int = 100 * 1024
    max_total_bytes: int = 500 * 1024
    max_tokens: int = 4096
    request_timeout_s: float = 90.0
    attempts: int = Field(default=1, ge=1)


class QueueSettings(BaseModel):
    concurrency: int = Field(default=2, ge=1)
    rate_limit_jobs: int = Field(default=10, ge=1)
    rate_limit_window_s: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(default=1, ge=1)
    poll_interval_s: float = Field(default=1.0, gt=0)
    lease_s: float = Field(default=60.0, gt=0)
    default_priority: int = 5


class SandboxSettings(BaseModel):
    backend: str = "docker"
    image: str = "skillmarketplace-sandbox"
    memory: str = "512m"
    memory_bytes: int = 512 * 1024 * 1024
    cpus: str = "1"
    cpu_seconds: int = 60
    pids_limit: int = 64
    grace_s: float = 2.0
    max_output_chars: int = 64_000
    default_command: str = "python3 scripts/main.py"
    start_attempts: int = Field(default=1, ge=1)
    docker_binary: str = "docker"
    unshare_binary: str = "unshare"


class Settings(BaseModel):
    provider: str = "openai"
    model: str = DEFAULT_MODEL
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    db_path: str = str(Path.home() / ".local/share/skill-trust/trust.db")
    packages_dir: str = str(Path.home() / ".local/share/skill-trust/packages")
    rules_path: str | None = None
    audit_url: str | None = None
    scoring: ScoringPolicy = Field(default_factory=ScoringPolicy)
    ai: AISettings = Field(default_factory=AISettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)

    def api_key_for(self, provider: str) -> str | None:
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
        }.get(provider)


def _load_config_file() -> dict[str, object]:
    candidates = [Path.cwd() / "skill-trust.toml", Path.home() / ".config/skill-trust/config.toml"]
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            return tomllib.loads(candidate.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", candidate, exc)
            continue
    return {}


def _read_optional_str(payload: dict[str, object], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _section(payload: dict[str, object], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def load_settings(
    *,
    provider: str | None = None,
    model: str | None = None,
    db_path: str | None = None,
) -> Settings:
    payload: dict[str, object] = _load_config_file()

    cfg_provider = cast(str, payload.get("provider", "openai"))
    cfg_model = cast(str, payload.get("model", DEFAULT_MODEL))

    try:
        scoring = ScoringPolicy.model_validate(_section(payload, "scoring"))
        ai = AISettings.model_validate(_section(payload, "ai"))
        queue = QueueSettings.model_validate(_section(payload, "queue"))
        sandbox = SandboxSettings.model_validate(_section(payload, "sandbox"))
    except ValidationError as exc:
        raise ValueError(f"Invalid skill-trust configuration: {exc}") from exc

    settings = Settings(
        provider=provider or os.getenv("SKILLTRUST_PROVIDER") or cfg_provider,
        model=model or os.getenv("SKILLTRUST_MODEL") or cfg_model,
        openai_api_key=os.getenv("OPENAI_API_KEY") or _read_optional_str(payload, "openai_api_key"),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or _read_optional_str(payload, "anthropic_api_key"),
        rules_path=os.getenv("SKILLTRUST_RULES") or _read_optional_str(payload, "rules_path"),
        audit_url=os.getenv("SKILLTRUST_AUDIT_URL") or _read_optional_str(payload, "audit_url"),
        scoring=scoring,
        ai=ai,
        queue=queue,
        sandbox=sandbox,
    )
    packages_dir = os.getenv("SKILLTRUST_PACKAGES_DIR") or _read_optional_str(payload, "packages_dir")
    if packages_dir:
        settings = settings.model_copy(update={"packages_dir": packages_dir})
    resolved_db = db_path or os.getenv("SKILLTRUST_DB") or _read_optional_str(payload, "db_path")
    if resolved_db:
        settings = settings.model_copy(update={"db_path": resolved_db})
    return settings
