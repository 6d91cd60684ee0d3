"""Provider-agnostic adapter base: translation hooks plus the HTTP exchange."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, cast

import httpx

from llm_gateway.errors import NetworkError, TranslationError, UpstreamError
from llm_gateway.retry import RetryPolicy, retry_with_backoff
from llm_gateway.sse import iter_sse_data, response_to_chunks
from llm_gateway.types import DONE, ChatRequest, ChatResponse, ProviderConfig, StreamChunk

_REDACTED = "***"
_SECRET_HEADERS = frozenset({"authorization", "x-api-key", "x-goog-api-key"})
_SECRET_PARAMS = frozenset({"key"})
_BODY_PREVIEW_CHARS = 2000


@dataclass
class StreamContext:
    """Per-stream scratch state shared across ``translate_stream_chunk`` calls."""

    model: str | None = None
    response_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def redact(values: Mapping[str, Any], secret_keys: frozenset[str]) -> dict[str, Any]:
    return {k: (_REDACTED if k.lower() in secret_keys else v) for k, v in values.items()}


class BaseProvider(ABC):
    """Abstract adapter between the canonical chat shape and one upstream API."""

    name: str
    _default_base_url: str = ""
    _fallback_model: str | None = None
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout_s)
        self._retry_policy = retry_policy or RetryPolicy()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this provider created it."""
        if self._owns_client:
            await self._client.aclose()

    # -- configuration -----------------------------------------------------

    @property
    def base_url(self) -> str:
        return (self.config.base_url or self._default_base_url).rstrip("/")

    def is_configured(self) -> bool:
        """Whether the provider has credentials to call upstream."""
        headers = {k.lower() for k in self.config.headers}
        return bool(self.config.api_key) or bool(headers & _SECRET_HEADERS)

    def get_default_model(self) -> str | None:
        return self.config.model or self._fallback_model

    def needs_streaming_translation(self) -> bool:
        """False when upstream chunks are already canonical."""
        return True

    # -- translation hooks -------------------------------------------------

    @abstractmethod
    def translate_request(self, req: ChatRequest) -> dict[str, Any]:
        """Build the upstream request body."""
        raise NotImplementedError

    @abstractmethod
    def translate_response(self, data: Mapping[str, Any], req: ChatRequest | None = None) -> ChatResponse:
        """Map an upstream JSON response onto ``ChatResponse``."""
        raise NotImplementedError

    @abstractmethod
    def translate_stream_chunk(
        self,
        chunk: str | bytes | Mapping[str, Any],
        context: StreamContext | None = None,
    ) -> StreamChunk | str | None:
        """Map one upstream stream event; ``None`` skips it, ``DONE`` ends the stream."""
        raise NotImplementedError

    @staticmethod
    def _decode_event(chunk: str | bytes | Mapping[str, Any]) -> Mapping[str, Any] | str | None:
        """Parse a raw stream event into a mapping; ``DONE`` passes through."""
        if isinstance(chunk, Mapping):
            return chunk
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        text = chunk.strip()
        if text.startswith("data:"):
            text = text[len("data:") :].strip()
        if not text:
            return None
        if text == DONE:
            return DONE
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, Mapping) else None

    @abstractmethod
    def _endpoint(self, req: ChatRequest, *, stream: bool) -> tuple[str, dict[str, str]]:
        """Return the request path and query parameters."""
        raise NotImplementedError

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _headers(self, *, stream: bool = False) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            **self._auth_headers(),
        }
        headers.update(self.config.headers)
        return headers

    def _resolve_model(self, req: ChatRequest) -> str:
        model = req.model or self.get_default_model()
        if not model:
            raise TranslationError(f"{self.name}: no model specified and no default configured")
        return model

    # -- HTTP --------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        """Perform one upstream exchange under the retry policy."""
        url = f"{self.base_url}{path}"
        headers = self._headers(stream=stream)
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(
                "Upstream request %s %s params=%s headers=%s body=%s",
                method,
                url,
                redact(params or {}, _SECRET_PARAMS),
                redact(headers, _SECRET_HEADERS),
                json.dumps(body)[:_BODY_PREVIEW_CHARS] if body is not None else None,
            )

        async def _attempt() -> httpx.Response:
            request = self._client.build_request(
                method,
                url,
                headers=headers,
                params=params,
                json=body,
                timeout=self.config.timeout_s,
            )
            try:
                return await self._client.send(request, stream=stream)
            except httpx.TransportError as exc:
                raise NetworkError(
                    f"Network error calling {self.name}: {exc}", provider=self.name
                ) from exc

        response = await retry_with_backoff(_attempt, self._retry_policy)
        self._logger.debug("Upstream response %s %s -> %d", method, url, response.status_code)

        if response.status_code >= 400:
            await response.aread()
            await response.aclose()
            raise UpstreamError(
                f"Upstream API error ({response.status_code}): {response.text}",
                status=response.status_code,
                provider=self.name,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise TranslationError(f"Upstream returned invalid JSON: {response.text[:200]}") from exc
        if not isinstance(data, dict):
            raise TranslationError("Upstream JSON response is not an object")
        return cast(dict[str, Any], data)

    # -- public operations -------------------------------------------------

    async def chat(self, req: ChatRequest) -> ChatResponse:
        """Send a non-streaming request and return the canonical response."""
        req = req.model_copy(update={"stream": False})
        path, params = self._endpoint(req, stream=False)
        response = await self._send("POST", path, body=self.translate_request(req), params=params)
        return self.translate_response(self._json(response), req)

    def stream(self, req: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Return an async iterator of canonical chunks for the request."""

        async def _gen() -> AsyncIterator[StreamChunk]:
            streaming_req = req.model_copy(update={"stream": True})
            path, params = self._endpoint(streaming_req, stream=True)
            body = self.translate_request(streaming_req)
            response = await self._send("POST", path, body=body, params=params, stream=True)
            try:
                content_type = response.headers.get("content-type", "")
                if "text/event-stream" not in content_type and "json" in content_type:
                    # upstream ignored stream=true and answered in one piece
                    await response.aread()
                    for chunk in response_to_chunks(self.translate_response(self._json(response), req)):
                        yield chunk
                    return

                context = StreamContext(model=body.get("model") or req.model)
                async for data in iter_sse_data(response):
                    translated = self._translate_event(data, context)
                    if translated is None:
                        continue
                    if translated == DONE:
                        return
                    yield cast(StreamChunk, translated)
            except httpx.HTTPError as exc:
                raise NetworkError(
                    f"Stream from {self.name} failed: {exc}", provider=self.name
                ) from exc
            finally:
                await response.aclose()

        return _gen()

    def _translate_event(self, data: str, context: StreamContext) -> StreamChunk | str | None:
        if self.needs_streaming_translation():
            return self.translate_stream_chunk(data, context)
        event = self._decode_event(data)
        if event is None or event == DONE:
            return event
        try:
            return StreamChunk.model_validate(event)
        except ValueError:
            self._logger.debug("Skipping malformed streaming chunk: %s", data[:200])
            return None

    async def list_models(self) -> list[dict[str, Any]]:
        """Return the upstream model list as ``[{id, ...}]``."""
        path, params = self._models_endpoint()
        response = await self._send("GET", path, params=params)
        return self._normalize_models(self._json(response))

    def _models_endpoint(self) -> tuple[str, dict[str, str]]:
        return "/v1/models", {}

    @staticmethod
    def _normalize_models(data: Mapping[str, Any]) -> list[dict[str, Any]]:
        models = data.get("data")
        if not isinstance(models, list):
            return []
        return [m for m in models if isinstance(m, dict) and m.get("id")]
