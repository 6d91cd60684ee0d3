"""Request entry point coordinating providers, tools and the model cache."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any

import httpx
from pydantic import ValidationError

from llm_gateway.config import GatewayConfig
from llm_gateway.errors import ConfigurationError, InvalidRequestError
from llm_gateway.model_cache import ModelCache
from llm_gateway.orchestrator import MAX_ITERATIONS, ToolOrchestrator
from llm_gateway.providers import BaseProvider, create_provider
from llm_gateway.relay import collect_response
from llm_gateway.retry import RetryPolicy
from llm_gateway.tools import ToolRegistry
from llm_gateway.types import ChatRequest, ChatResponse, ProviderConfig, StreamChunk

ProviderResolver = Callable[[str | None], ProviderConfig]

_logger = logging.getLogger(__name__)


class ChatGateway:
    """High-level coordinator for chatting with configured providers."""

    def __init__(
        self,
        resolve_provider: ProviderResolver,
        *,
        tools: ToolRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        max_iterations: int = MAX_ITERATIONS,
        model_cache: ModelCache | None = None,
    ) -> None:
        self._resolve_provider = resolve_provider
        self._tools = tools
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=None)
        self._retry_policy = retry_policy or RetryPolicy()
        self._max_iterations = max_iterations
        self.model_cache = model_cache or ModelCache()

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        *,
        tools: ToolRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> ChatGateway:
        return cls(
            config.resolve_provider,
            tools=tools,
            http_client=http_client or httpx.AsyncClient(timeout=config.timeout_s),
            retry_policy=config.retry.to_policy(),
            max_iterations=config.max_iterations,
        )

    async def aclose(self) -> None:
        """Close the shared HTTP client if this gateway created it."""
        if self._owns_client:
            await self._client.aclose()

    def get_provider(self, provider_id: str | None) -> BaseProvider:
        """Return a ready adapter for ``provider_id`` (``None`` selects the default)."""
        config = self._resolve_provider(provider_id)
        provider = create_provider(config, client=self._client, retry_policy=self._retry_policy)
        if not provider.is_configured():
            raise ConfigurationError(
                f"Provider '{config.id or config.type}' is missing an API key."
            )
        return provider

    @staticmethod
    def validate(payload: Mapping[str, Any] | ChatRequest) -> ChatRequest:
        """Validate an inbound payload into a ``ChatRequest``."""
        if isinstance(payload, ChatRequest):
            return payload
        try:
            return ChatRequest.model_validate(payload)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
                for err in exc.errors()
            )
            raise InvalidRequestError(f"Invalid chat request: {details}") from exc

    def _should_orchestrate(self, req: ChatRequest) -> bool:
        if not req.tools or not self._tools:
            return False
        # tools the registry cannot run are left for the client to execute
        return all(tool.function.name in self._tools for tool in req.tools)

    async def chat(self, req: ChatRequest, *, cancel: asyncio.Event | None = None) -> ChatResponse:
        """Execute a non-streaming chat completion request."""
        provider = self.get_provider(req.provider_id)
        if not self._should_orchestrate(req):
            return await provider.chat(req)
        orchestrator = ToolOrchestrator(
            provider,
            self._tools,  # type: ignore[arg-type]
            max_iterations=self._max_iterations,
            cancel=cancel,
        )
        return await collect_response(orchestrator.run(req.model_copy(update={"stream": False})))

    def stream(self, req: ChatRequest, *, cancel: asyncio.Event | None = None) -> AsyncIterator[StreamChunk]:
        """Stream canonical chunks for a chat request."""
        provider = self.get_provider(req.provider_id)
        if not self._should_orchestrate(req):
            return provider.stream(req)
        orchestrator = ToolOrchestrator(
            provider,
            self._tools,  # type: ignore[arg-type]
            max_iterations=self._max_iterations,
            cancel=cancel,
        )
        return orchestrator.run(req.model_copy(update={"stream": True}))

    async def list_models(self, provider_id: str | None, *, user_id: str | None = None) -> list[dict[str, Any]]:
        """Return the provider's model list, served from the cache when possible."""
        config = self._resolve_provider(provider_id)
        cache_key = config.id or config.type
        cached = self.model_cache.get(user_id, cache_key)
        if cached is not None:
            return cached
        models = await self.get_provider(provider_id).list_models()
        _logger.debug("Fetched %d models from %s", len(models), cache_key)
        self.model_cache.set(user_id, cache_key, models)
        return models
