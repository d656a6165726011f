from __future__ import annotations

import json
import re
from dataclasses import dataclass
from operator import eq, ge, gt, le, lt, ne

from packaging.specifiers import Specifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from skill_trust.models.findings import Severity
from skill_trust.rules.catalog import VulnerableDependency

NPM_SECTIONS = ("dependencies", "devDependencies", "optionalDependencies", "peerDependencies")
REQUIREMENT_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)\s*(?:\[[^\]]*\])?\s*(?:(==|~=|>=|<=|>|<|!=)\s*([^\s;,#]+))?")
NPM_RANGE_PREFIX_RE = re.compile(r"^[\s^~=<>v]+")
NETWORK_COMMAND_RE = re.compile(r"\b(?:curl|wget)\b", re.IGNORECASE)
COMPARISONS = {"<": lt, "<=": le, ">": gt, ">=": ge, "==": eq, "!=": ne}

DEPENDENCY_FILES = {"package.json": "npm", "requirements.txt": "pypi"}


@dataclass(frozen=True)
class DependencyIssue:
    severity: Severity
    category: str
    title: str
    description: str
    recommendation: str
    line: int | None = None


def parse_version(value: str) -> Version | None:
    """Parse a pinned version, or the lowest version an npm range like ``^3.3.6`` admits."""
    tokens = NPM_RANGE_PREFIX_RE.sub("", value).split()
    if not tokens:
        return None
    try:
        return Version(tokens[0])
    except InvalidVersion:
        return None


def _in_range(version: Version, specifier: Specifier) -> bool:
    compare = COMPARISONS.get(specifier.operator)
    if compare is None or specifier.version.endswith(".*"):
        return specifier.contains(version, prereleases=True)
    # Plain ordering, so a pre-release of the bound sorts below it.
    return compare(version, Version(specifier.version))


def is_vulnerable(installed: str | None, vulnerable_range: str) -> bool:
    if vulnerable_range.strip() == "*":
        return True
    if installed is None:
        return False
    version = parse_version(installed)
    if version is None:
        return False
    return all(_in_range(version, specifier) for specifier in SpecifierSet(vulnerable_range))


def _match_known(
    ecosystem: str,
    name: str,
    version: str | None,
    known: list[VulnerableDependency],
    line: int | None,
) -> list[DependencyIssue]:
    issues: list[DependencyIssue] = []
    for entry in known:
        if entry.ecosystem != ecosystem or entry.name.lower() != name.lower():
            continue
        if is_vulnerable(version, entry.versions):
            issues.append(
                DependencyIssue(
                    severity=entry.severity,
                    category="Vulnerable Dependency",
                    title=f"Vulnerable Package: {name}",
                    description=entry.description,
                    recommendation=f"Update {name} to a patched version or find an alternative",
                    line=line,
                )
            )
    return issues


def check_package_json(text: str, known: list[VulnerableDependency]) -> list[DependencyIssue]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict):
        return [
            DependencyIssue(
                severity=Severity.MEDIUM,
                category="Configuration",
                title="Invalid package.json",
                description="Could not parse package.json",
                recommendation="Ensure package.json is valid JSON",
            )
        ]

    issues: list[DependencyIssue] = []
    for section in NPM_SECTIONS:
        deps = payload.get(section)
        if not isinstance(deps, dict):
            continue
        for name, version in deps.items():
            issues.extend(_match_known("npm", str(name), str(version), known, None))

    scripts = payload.get("scripts")
    if isinstance(scripts, dict) and any(NETWORK_COMMAND_RE.search(str(value)) for value in scripts.values()):
        issues.append(
            DependencyIssue(
                severity=Severity.HIGH,
                category="Suspicious Scripts",
                title="Network Command in Scripts",
                description="Found curl or wget in package scripts",
                recommendation="Review scripts for malicious behavior",
            )
        )
    return issues


def check_requirements(text: str, known: list[VulnerableDependency]) -> list[DependencyIssue]:
    issues: list[DependencyIssue] = []
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("#", 1)[0].strip()
        if not line or line.startswith("-"):
            continue
        match = REQUIREMENT_RE.match(line)
        if not match:
            continue
        name, operator, version = match.groups()
        # Only exact pins identify the installed version.
        pinned = version if operator in ("==", "~=") else None
        issues.extend(_match_known("pypi", name, pinned, known, number))
    return issues


def check_dependency_file(path: str, text: str, known: list[VulnerableDependency]) -> list[DependencyIssue]:
    kind = DEPENDENCY_FILES.get(path.rsplit("/", 1)[-1])
    if kind == "npm":
        return check_package_json(text, known)
    if kind == "pypi":
        return check_requirements(text, known)
    return []
