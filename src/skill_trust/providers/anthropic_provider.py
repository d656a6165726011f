from __future__ import annotations

import logging

from skill_trust.config import AISettings
from skill_trust.providers.base import RETRYABLE_STATUS_CODES, LLMProvider, register_provider
from skill_trust.utils.retry import RetryableError, async_retry_with_backoff

logger = logging.getLogger(__name__)


@register_provider("anthropic")
class AnthropicProvider(LLMProvider):
    name = "anthropic"

    def __init__(self, api_key: str | None, model: str, settings: AISettings | None = None) -> None:
        super().__init__(api_key=api_key, model=model, settings=settings)
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY is required for Anthropic analysis")
        try:
            from anthropic import APIConnectionError, APIStatusError, APITimeoutError, AsyncAnthropic
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError("Install optional dependency: pip install 'skill-trust[anthropic]'") from exc

        self._client = AsyncAnthropic(api_key=api_key, timeout=self.settings.request_timeout_s)
        self._api_status_error_type = APIStatusError
        self._transport_error_types: tuple[type[BaseException], ...] = (APIConnectionError, APITimeoutError)

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, self._transport_error_types):
            return True
        if isinstance(exc, self._api_status_error_type):
            return getattr(exc, "status_code", None) in RETRYABLE_STATUS_CODES
        return False

    async def complete(self, system: str, user: str) -> str:
        async def _call() -> str:
            try:
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.settings.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
            except Exception as exc:
                if self._is_retryable(exc):
                    raise RetryableError(f"Retryable Anthropic error: {exc}") from exc
                raise

            text = "".join(getattr(block, "text", "") for block in response.content)
            if not text:
                raise RetryableError("Anthropic returned empty response")
            return text

        logger.info("Requesting Anthropic analysis with model %s", self.model)
        return await async_retry_with_backoff(_call, attempts=self.settings.attempts, label="Anthropic request")
