from __future__ import annotations

import re
from typing import Any

import yaml

FRONTMATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n(.*))?\Z", re.DOTALL)


def parse_frontmatter(text: str) -> tuple[dict[str, Any], str] | None:
    match = FRONTMATTER_RE.match(text)
    if not match:
        return None
    raw_yaml, body = match.group(1), match.group(2) or ""
    try:
        payload = yaml.safe_load(raw_yaml)
    except yaml.YAMLError:
        return None
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return None
    return payload, body


def frontmatter_line(text: str, key: str) -> int | None:
    """Return the 1-based line of ``key:`` inside the leading frontmatter block."""
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return None
    pattern = re.compile(rf"^\s*{re.escape(key)}\s*:")
    for index, line in enumerate(lines[1:], start=2):
        if line.strip() == "---":
            return None
        if pattern.match(line):
            return index
    return None
