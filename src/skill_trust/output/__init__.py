"""Output renderers."""

from skill_trust.output.console import render_assessment, render_jobs
from skill_trust.output.json_export import export_json_report
from skill_trust.output.sarif_export import export_sarif_report

__all__ = [
    "export_json_report",
    "export_sarif_report",
    "render_assessment",
    "render_jobs",
]
