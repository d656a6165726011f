from __future__ import annotations

import logging

import httpx

from skill_trust.models.versions import AuditEvent
from skill_trust.storage.store import TrustStore
from skill_trust.utils.retry import RetryableError, async_retry_with_backoff

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}


class AuditLog:
    """Writes audit events to the store and, when configured, forwards them over HTTP."""

    def __init__(
        self,
        store: TrustStore,
        *,
        audit_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        attempts: int = 3,
    ) -> None:
        self.store = store
        self.audit_url = audit_url
        self._client = client
        self._attempts = attempts

    async def record(self, event: AuditEvent) -> AuditEvent:
        stamped = self.store.record_audit(event)
        if self.audit_url:
            await self._forward(self.audit_url, stamped)
        return stamped

    async def _forward(self, url: str, event: AuditEvent) -> None:
        async def _post(client: httpx.AsyncClient) -> None:
            async def _call() -> None:
                try:
                    response = await client.post(url, json=event.model_dump(mode="json"))
                except httpx.TransportError as exc:
                    raise RetryableError(f"Retryable audit transport error: {exc}") from exc
                if response.status_code in RETRYABLE_STATUSES:
                    raise RetryableError(f"Retryable audit status {response.status_code}")
                if response.status_code >= 400:
                    logger.warning("Audit endpoint rejected %s (status=%s)", event.action, response.status_code)

            await async_retry_with_backoff(_call, attempts=self._attempts, label="Audit forward")

        # The local record is authoritative; forwarding failures are logged only.
        try:
            if self._client is not None:
                await _post(self._client)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    await _post(client)
        except (RetryableError, httpx.HTTPError) as exc:
            logger.warning("Failed to forward audit event %s to %s: %s", event.action, url, exc)
