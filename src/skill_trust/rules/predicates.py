from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from typing import Any

from skill_trust.utils.frontmatter import frontmatter_line, parse_frontmatter

# (1-based line, evidence text)
PredicateHit = tuple[int, str]
Predicate = Callable[[str], list[PredicateHit]]

PREDICATES: dict[str, Predicate] = {}

CURL_PIPE_RE = re.compile(
    r"\b(?:curl|wget)\b[^\n|]*\|\s*(?:sudo\s+)?(?:(?:ba|z|da|k)?sh|python[0-9.]*|perl|ruby|node)\b"
)
ENCODED_BLOB_RE = re.compile(r"[A-Za-z0-9+/]{200,}={0,2}")

PERMISSION_KEYS = ("allowed-paths", "allowed_paths", "allowed-tools", "allowed_tools")
BROAD_VALUES = {"/", "/*", "/**", "*", "**", "all"}


def register_predicate(name: str) -> Callable[[Predicate], Predicate]:
    def _decorator(fn: Predicate) -> Predicate:
        PREDICATES[name] = fn
        return fn

    return _decorator


def _line_hits(text: str, pattern: re.Pattern[str]) -> list[PredicateHit]:
    hits: list[PredicateHit] = []
    for number, line in enumerate(text.splitlines(), start=1):
        match = pattern.search(line)
        if match:
            hits.append((number, match.group(0)))
    return hits


@register_predicate("curl_pipe_shell")
def curl_pipe_shell(text: str) -> list[PredicateHit]:
    return _line_hits(text, CURL_PIPE_RE)


@register_predicate("long_encoded_blob")
def long_encoded_blob(text: str) -> list[PredicateHit]:
    return [(line, blob[:60] + "...") for line, blob in _line_hits(text, ENCODED_BLOB_RE)]


def _permission_values(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    if isinstance(value, list):
        return [str(item).strip() for item in value]
    return []


@register_predicate("excessive_permissions")
def excessive_permissions(text: str) -> list[PredicateHit]:
    """Flag frontmatter permission declarations that grant everything."""
    parsed = parse_frontmatter(text)
    if parsed is None:
        return []
    metadata, _ = parsed

    hits: list[PredicateHit] = []
    for key in PERMISSION_KEYS:
        if key not in metadata:
            continue
        broad = [value for value in _permission_values(metadata[key]) if value.casefold() in BROAD_VALUES]
        if broad:
            hits.append((frontmatter_line(text, key) or 1, f"{key}: {', '.join(broad)}"))
    return hits
