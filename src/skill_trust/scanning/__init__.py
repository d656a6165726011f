"""Pattern-based package scanning."""

from skill_trust.scanning.files import (
    classify,
    extract_archive,
    is_binary,
    pack_directory,
    read_archive,
    read_directory,
)
from skill_trust.scanning.pattern_scanner import scan_archive, scan_error_report, scan_files

__all__ = [
    "classify",
    "extract_archive",
    "is_binary",
    "pack_directory",
    "read_archive",
    "read_directory",
    "scan_archive",
    "scan_error_report",
    "scan_files",
]
