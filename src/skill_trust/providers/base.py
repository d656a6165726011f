from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from skill_trust.config import AISettings


class LLMProvider(ABC):
    name: str = "unknown"

    def __init__(self, api_key: str | None, model: str, settings: AISettings | None = None) -> None:
        self.api_key = api_key
        self.model = model
        self.settings = settings or AISettings()

    @abstractmethod
    async def complete(self, system: str, user: str) -> str:
        """Send one system/user exchange and return the raw text of the reply."""
        raise NotImplementedError


ProviderFactory = Callable[[str | None, str, AISettings | None], LLMProvider]

_REGISTRY: dict[str, ProviderFactory] = {}

RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504, 529}


def register_provider(name: str) -> Callable[[type[LLMProvider]], type[LLMProvider]]:
    def decorator(cls: type[LLMProvider]) -> type[LLMProvider]:
        _REGISTRY[name] = cls
        return cls

    return decorator


def create_provider(
    name: str,
    api_key: str | None,
    model: str,
    settings: AISettings | None = None,
) -> LLMProvider:
    if name not in _REGISTRY:
        msg = f"Unsupported provider: {name}. Available: {', '.join(sorted(_REGISTRY))}"
        raise ValueError(msg)
    return _REGISTRY[name](api_key, model, settings)


def available_providers() -> list[str]:
    return sorted(_REGISTRY)
