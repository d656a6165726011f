from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ProcessingState(StrEnum):
    UPLOADED = "UPLOADED"
    SCANNED = "SCANNED"
    AI_ANALYZED = "AI_ANALYZED"
    EVAL_QUEUED = "EVAL_QUEUED"
    PROCESSING_COMPLETE = "PROCESSING_COMPLETE"


STATE_ORDER = {state: index for index, state in enumerate(ProcessingState)}


class VersionRecord(BaseModel):
    id: str
    skill_id: str | None = None
    package_path: str | None = None
    state: ProcessingState = ProcessingState.UPLOADED
    notes: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @property
    def processing_complete(self) -> bool:
        return self.state == ProcessingState.PROCESSING_COMPLETE


class AuditEvent(BaseModel):
    actor: str
    action: str
    scope: dict[str, Any] = Field(default_factory=dict)
    processed: int = 0
    failed: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
