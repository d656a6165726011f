from __future__ import annotations

import logging

from skill_trust.config import AISettings
from skill_trust.providers.base import RETRYABLE_STATUS_CODES, LLMProvider, register_provider
from skill_trust.utils.retry import RetryableError, async_retry_with_backoff

logger = logging.getLogger(__name__)


@register_provider("openai")
class OpenAIProvider(LLMProvider):
    name = "openai"

    def __init__(self, api_key: str | None, model: str, settings: AISettings | None = None) -> None:
        super().__init__(api_key=api_key, model=model, settings=settings)
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required for OpenAI analysis")
        try:
            from openai import (
                APIConnectionError,
                APIStatusError,
                APITimeoutError,
                AsyncOpenAI,
                InternalServerError,
                RateLimitError,
            )
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError("Install optional dependency: pip install 'skill-trust[openai]'") from exc

        self._client = AsyncOpenAI(api_key=api_key)
        self._api_status_error_type = APIStatusError
        self._retryable_error_types: tuple[type[BaseException], ...] = (
            APIConnectionError,
            APITimeoutError,
            RateLimitError,
            InternalServerError,
        )

    def _is_retryable_openai_error(self, exc: Exception) -> bool:
        if isinstance(exc, self._retryable_error_types):
            return True
        if isinstance(exc, self._api_status_error_type):
            status = getattr(exc, "status_code", None)
            if isinstance(status, int):
                return status in RETRYABLE_STATUS_CODES
        return False

    async def complete(self, system: str, user: str) -> str:
        async def _call() -> str:
            try:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    response_format={"type": "json_object"},
                    max_completion_tokens=self.settings.max_tokens,
                    timeout=self.settings.request_timeout_s,
                )
            except Exception as exc:
                if self._is_retryable_openai_error(exc):
                    raise RetryableError(f"Retryable OpenAI error: {exc}") from exc
                raise

            content = response.choices[0].message.content
            if not content:
                raise RetryableError("OpenAI returned empty response")
            return content

        logger.info("Requesting OpenAI analysis with model %s", self.model)
        return await async_retry_with_backoff(_call, attempts=self.settings.attempts, label="OpenAI request")
