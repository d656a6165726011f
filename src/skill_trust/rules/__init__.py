"""Rule catalog."""

from skill_trust.rules.catalog import (
    Granularity,
    Matcher,
    RuleCatalog,
    SecurityRule,
    VulnerableDependency,
    load_catalog,
    parse_catalog,
)
from skill_trust.rules.predicates import PREDICATES

__all__ = [
    "PREDICATES",
    "Granularity",
    "Matcher",
    "RuleCatalog",
    "SecurityRule",
    "VulnerableDependency",
    "load_catalog",
    "parse_catalog",
]
