"""Provider registry."""

from skill_trust.providers.anthropic_provider import AnthropicProvider
from skill_trust.providers.base import (
    LLMProvider,
    available_providers,
    create_provider,
    register_provider,
)
from skill_trust.providers.openai_provider import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "LLMProvider",
    "OpenAIProvider",
    "available_providers",
    "create_provider",
    "register_provider",
]
