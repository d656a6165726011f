from __future__ import annotations

import logging
import re
from enum import StrEnum
from functools import cached_property
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from skill_trust.exceptions import RuleCatalogError
from skill_trust.models.files import FileClass
from skill_trust.models.findings import Severity
from skill_trust.rules.predicates import PREDICATES

logger = logging.getLogger(__name__)

CATALOG_RESOURCE = "catalog.yaml"


class Granularity(StrEnum):
    MATCH = "match"
    FILE = "file"


class Matcher(BaseModel):
    model_config = ConfigDict(frozen=True)

    regex: str | None = None
    literal: str | None = None
    predicate: str | None = None
    ignore_case: bool = False
    exclude: str | None = None

    @model_validator(mode="after")
    def _exactly_one_kind(self) -> Matcher:
        kinds = [value for value in (self.regex, self.literal, self.predicate) if value is not None]
        if len(kinds) != 1:
            raise ValueError("matcher needs exactly one of regex, literal or predicate")
        if self.predicate is not None and self.predicate not in PREDICATES:
            raise ValueError(f"unknown predicate '{self.predicate}'")
        for pattern in (self.regex, self.exclude):
            if pattern is None:
                continue
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid regex {pattern!r}: {exc}") from exc
        return self

    @cached_property
    def compiled(self) -> re.Pattern[str] | None:
        if self.regex is None:
            return None
        return re.compile(self.regex, re.IGNORECASE if self.ignore_case else 0)

    @cached_property
    def compiled_exclude(self) -> re.Pattern[str] | None:
        return re.compile(self.exclude) if self.exclude else None


class SecurityRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    category: str
    name: str
    description: str
    severity: Severity
    applies_to: list[FileClass] = Field(min_length=1)
    check_description: str
    harm_description: str
    recommendation: str | None = None
    matchers: list[Matcher] = Field(default_factory=list)
    granularity: Granularity = Granularity.MATCH

    @property
    def ai_only(self) -> bool:
        return not self.matchers

    def applies(self, file_class: FileClass) -> bool:
        return file_class in self.applies_to


class VulnerableDependency(BaseModel):
    model_config = ConfigDict(frozen=True)

    ecosystem: str
    name: str
    versions: str = "*"
    severity: Severity
    description: str

    @field_validator("versions")
    @classmethod
    def _valid_range(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("version range must not be empty")
        if value.strip() == "*":
            return value
        try:
            SpecifierSet(value)
        except InvalidSpecifier as exc:
            raise ValueError(f"invalid version range {value!r}") from exc
        return value


class RuleCatalog(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = "0"
    rules: list[SecurityRule]
    dependencies: list[VulnerableDependency] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> RuleCatalog:
        seen: set[str] = set()
        for rule in self.rules:
            if rule.id in seen:
                raise ValueError(f"duplicate rule id '{rule.id}'")
            seen.add(rule.id)
        return self

    def rules_for(self, file_class: FileClass) -> list[SecurityRule]:
        return [rule for rule in self.rules if rule.applies(file_class)]

    def pattern_rules(self, file_class: FileClass) -> list[SecurityRule]:
        return [rule for rule in self.rules_for(file_class) if not rule.ai_only]

    def get(self, rule_id: str) -> SecurityRule | None:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None


def parse_catalog(payload: Any, *, source: str = "<memory>") -> RuleCatalog:
    if not isinstance(payload, dict):
        raise RuleCatalogError(f"Rule catalog {source} must be a mapping")
    try:
        return RuleCatalog.model_validate(payload)
    except ValidationError as exc:
        raise RuleCatalogError(f"Invalid rule catalog {source}: {exc}") from exc


def load_catalog(path: str | Path | None = None) -> RuleCatalog:
    """Load the rule catalog from ``path`` or the catalog bundled with the package."""
    if path is None:
        source = f"package:{CATALOG_RESOURCE}"
        text = resources.files("skill_trust.rules").joinpath("data", CATALOG_RESOURCE).read_text(encoding="utf-8")
    else:
        source = str(path)
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise RuleCatalogError(f"Cannot read rule catalog {source}: {exc}") from exc

    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise RuleCatalogError(f"Rule catalog {source} is not valid YAML: {exc}") from exc

    catalog = parse_catalog(payload, source=source)
    logger.info("Loaded %s rules from %s", len(catalog.rules), source)
    return catalog
