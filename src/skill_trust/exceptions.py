from __future__ import annotations


class SkillTrustError(Exception):
    """Base class for errors raised by the trust pipeline."""


class RuleCatalogError(SkillTrustError):
    pass


class ArchiveError(SkillTrustError):
    pass


class AIResponseError(SkillTrustError):
    """The model response was missing, not JSON, or did not match the expected shape."""


class QueueError(SkillTrustError):
    """An evaluation job could not be persisted or scheduled."""


class SandboxError(SkillTrustError):
    """The sandbox could not be started."""
