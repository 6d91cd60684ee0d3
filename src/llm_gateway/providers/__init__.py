"""Provider adapters for llm_gateway."""

from __future__ import annotations

import httpx

from llm_gateway.errors import UnsupportedProviderError
from llm_gateway.retry import RetryPolicy
from llm_gateway.types import ProviderConfig

from .anthropic import AnthropicProvider
from .base import BaseProvider, StreamContext
from .gemini import GeminiProvider
from .openai import OpenAIProvider

_PROVIDER_TYPES: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "openai-compatible": OpenAIProvider,
    "openai-completions": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def create_provider(
    config: ProviderConfig,
    *,
    client: httpx.AsyncClient | None = None,
    retry_policy: RetryPolicy | None = None,
) -> BaseProvider:
    """Instantiate the adapter registered for ``config.type``."""
    try:
        provider_cls = _PROVIDER_TYPES[config.type.lower()]
    except KeyError as exc:
        raise UnsupportedProviderError(config.type) from exc
    return provider_cls(config, client=client, retry_policy=retry_policy)


__all__ = [
    "BaseProvider",
    "StreamContext",
    "OpenAIProvider",
    "AnthropicProvider",
    "GeminiProvider",
    "create_provider",
]
