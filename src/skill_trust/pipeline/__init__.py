"""Version processing pipeline."""

from skill_trust.pipeline.processor import VersionProcessor, find_test_config
from skill_trust.pipeline.reanalysis import (
    MAX_REANALYSIS_VERSIONS,
    ReanalysisResult,
    ReanalysisScope,
    ScopeType,
    reanalyze,
)
from skill_trust.pipeline.supervisor import PipelineSupervisor

__all__ = [
    "MAX_REANALYSIS_VERSIONS",
    "PipelineSupervisor",
    "ReanalysisResult",
    "ReanalysisScope",
    "ScopeType",
    "VersionProcessor",
    "find_test_config",
    "reanalyze",
]
