from __future__ import annotations

import asyncio
import logging

from skill_trust.models.versions import ProcessingState, VersionRecord
from skill_trust.pipeline.processor import VersionProcessor

logger = logging.getLogger(__name__)


class PipelineSupervisor:
    """Owns the background tasks that process submitted versions."""

    def __init__(self, processor: VersionProcessor) -> None:
        self.processor = processor
        self._tasks: set[asyncio.Task[VersionRecord | None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        version_id: str,
        archive_bytes: bytes,
        *,
        skill_id: str | None = None,
        actor: str = "system",
    ) -> asyncio.Task[VersionRecord | None]:
        task = asyncio.create_task(
            self._run(version_id, archive_bytes, skill_id=skill_id, actor=actor),
            name=f"process-version-{version_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        version_id: str,
        archive_bytes: bytes,
        *,
        skill_id: str | None,
        actor: str,
    ) -> VersionRecord | None:
        try:
            return await self.processor.process(version_id, archive_bytes, skill_id=skill_id, actor=actor)
        except Exception as exc:
            logger.exception("Processing failed for version %s", version_id)
            return self._record_failure(version_id, exc)

    def _record_failure(self, version_id: str, exc: Exception) -> VersionRecord | None:
        store = self.processor.store
        try:
            if store.get_version(version_id) is None:
                return None
            store.add_note(version_id, f"pipeline: {exc}")
            store.advance_state(version_id, ProcessingState.PROCESSING_COMPLETE)
            return store.get_version(version_id)
        except Exception:
            logger.exception("Could not record the processing failure for version %s", version_id)
            return None

    async def shutdown(self) -> None:
        """Wait for every submitted version to finish processing."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
