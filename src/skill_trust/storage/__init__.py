"""Durable storage for reports, evaluation jobs, versions and audit events."""

from skill_trust.storage.audit import AuditLog
from skill_trust.storage.store import TrustStore

__all__ = ["AuditLog", "TrustStore"]
