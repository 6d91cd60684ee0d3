"""OpenAI-compatible Chat Completions provider (identity translation)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from llm_gateway.errors import TranslationError
from llm_gateway.providers.base import BaseProvider, StreamContext
from llm_gateway.types import DONE, ChatRequest, ChatResponse, Message, StreamChunk, new_completion_id
from llm_gateway.usage import extract_usage

_DEFAULT_BASE_URL = "https://api.openai.com"
_CHAT_PATH = "/v1/chat/completions"
_FALLBACK_MODEL = "gpt-4.1-mini"


class OpenAIProvider(BaseProvider):
    """Relay to any API that already speaks the OpenAI chat-completions dialect."""

    name = "openai"
    _default_base_url = _DEFAULT_BASE_URL
    _fallback_model = _FALLBACK_MODEL

    @property
    def base_url(self) -> str:
        base = super().base_url
        return base[: -len("/v1")] if base.endswith("/v1") else base

    def needs_streaming_translation(self) -> bool:
        return False

    def _auth_headers(self) -> dict[str, str]:
        if not self.config.api_key:
            return {}
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _endpoint(self, req: ChatRequest, *, stream: bool) -> tuple[str, dict[str, str]]:
        return _CHAT_PATH, {}

    def translate_request(self, req: ChatRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._resolve_model(req),
            "messages": [self._serialize_message(m) for m in req.messages],
            "stream": req.stream,
        }
        if req.tools:
            payload["tools"] = [tool.model_dump(exclude_none=True) for tool in req.tools]
        if req.tool_choice is not None:
            payload["tool_choice"] = req.tool_choice
        for key in ("max_tokens", "temperature", "top_p", "stop"):
            value = getattr(req, key)
            if value is not None:
                payload[key] = value
        return payload

    @staticmethod
    def _serialize_message(message: Message) -> dict[str, Any]:
        data = message.model_dump(exclude_none=True, exclude={"tool_calls"})
        if message.tool_calls:
            data["tool_calls"] = [
                call.model_dump(exclude_none=True, exclude={"index", "gemini_thought_signature"})
                for call in message.tool_calls
            ]
        data.setdefault("content", None)
        return data

    def translate_response(self, data: Mapping[str, Any], req: ChatRequest | None = None) -> ChatResponse:
        payload = dict(data)
        payload.setdefault("id", new_completion_id())
        if not payload.get("model"):
            payload["model"] = (req.model if req else None) or self.get_default_model()
        choices = []
        for i, raw in enumerate(payload.get("choices") or []):
            choice = dict(raw)
            choice.setdefault("index", i)
            message = dict(choice.get("message") or {})
            message.setdefault("role", "assistant")
            choice["message"] = message
            choices.append(choice)
        payload["choices"] = choices
        payload.pop("usage", None)
        payload.pop("object", None)
        try:
            response = ChatResponse.model_validate(payload)
        except ValueError as exc:
            raise TranslationError(f"Unexpected chat completion shape: {exc}") from exc
        response.usage = extract_usage(data)
        return response

    def translate_stream_chunk(
        self,
        chunk: str | bytes | Mapping[str, Any],
        context: StreamContext | None = None,
    ) -> StreamChunk | str | None:
        event = self._decode_event(chunk)
        if event is None or event == DONE:
            return event
        try:
            return StreamChunk.model_validate(event)
        except ValueError:
            self._logger.debug("Skipping malformed chat completion chunk: %s", event)
            return None
