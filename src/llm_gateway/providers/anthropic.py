"""Anthropic Messages API provider."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from llm_gateway.errors import TranslationError
from llm_gateway.providers.base import BaseProvider, StreamContext
from llm_gateway.types import (
    DONE,
    ChatRequest,
    ChatResponse,
    Choice,
    ChunkDelta,
    FunctionCall,
    FunctionCallDelta,
    ImageUrlPart,
    Message,
    StreamChunk,
    TextPart,
    ToolCall,
    ToolCallDelta,
    ToolSpec,
    Usage,
    new_completion_id,
)
from llm_gateway.usage import normalize_usage

_DEFAULT_BASE_URL = "https://api.anthropic.com"
_MESSAGES_PATH = "/v1/messages"
_API_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 4096
_FALLBACK_MODEL = "claude-3-5-sonnet-20241022"

_DATA_URL = re.compile(r"^data:(image/[\w.+-]+);base64,(.+)$", re.DOTALL)


class AnthropicProvider(BaseProvider):
    """Translate canonical chat requests to and from the Messages API."""

    name = "anthropic"
    _default_base_url = _DEFAULT_BASE_URL
    _fallback_model = _FALLBACK_MODEL

    @property
    def base_url(self) -> str:
        base = super().base_url
        return base[: -len("/v1")] if base.endswith("/v1") else base

    def _auth_headers(self) -> dict[str, str]:
        headers = {"anthropic-version": _API_VERSION}
        if self.config.api_key:
            headers["x-api-key"] = self.config.api_key
        return headers

    def _endpoint(self, req: ChatRequest, *, stream: bool) -> tuple[str, dict[str, str]]:
        return _MESSAGES_PATH, {}

    # -- request -----------------------------------------------------------

    def translate_request(self, req: ChatRequest) -> dict[str, Any]:
        model = self._resolve_model(req)
        system_text, messages = self._split_system(req.messages)
        if not messages:
            raise TranslationError("Anthropic provider requires at least one non-system message")

        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": req.max_tokens or _DEFAULT_MAX_TOKENS,
            "stream": req.stream,
        }
        if system_text:
            payload["system"] = system_text
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if req.top_k is not None:
            payload["top_k"] = req.top_k
        if req.stop is not None:
            payload["stop_sequences"] = [req.stop] if isinstance(req.stop, str) else list(req.stop)

        if req.tools:
            payload["tools"] = self._serialize_tools(req.tools)
            tool_choice = self._serialize_tool_choice(req.tool_choice)
            if tool_choice is not None:
                payload["tool_choice"] = tool_choice
        return payload

    def _split_system(self, messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
        system_parts: list[str] = []
        rest: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                text = message.text()
                if text:
                    system_parts.append(text)
                continue
            serialized = self._serialize_message(message)
            if self._is_tool_result(serialized) and rest and self._is_tool_result(rest[-1]):
                rest[-1]["content"].extend(serialized["content"])
                continue
            rest.append(serialized)
        return "\n\n".join(system_parts), rest

    @staticmethod
    def _is_tool_result(message: dict[str, Any]) -> bool:
        content = message.get("content")
        return (
            message.get("role") == "user"
            and isinstance(content, list)
            and bool(content)
            and all(block.get("type") == "tool_result" for block in content)
        )

    def _serialize_message(self, message: Message) -> dict[str, Any]:
        if message.role == "tool":
            return {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id,
                        "content": message.text(),
                    }
                ],
            }

        role = "assistant" if message.role == "assistant" else "user"
        content: str | list[dict[str, Any]]
        if isinstance(message.content, list):
            content = [b for b in (self._serialize_part(p) for p in message.content) if b]
        else:
            content = message.content or ""

        if message.role == "assistant" and message.tool_calls:
            blocks = [self._tool_use_block(call) for call in message.tool_calls]
            if isinstance(content, list):
                content = [*content, *blocks]
            elif content:
                content = [{"type": "text", "text": content}, *blocks]
            else:
                content = blocks
        return {"role": role, "content": content}

    def _serialize_part(self, part: Any) -> dict[str, Any] | None:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImageUrlPart):
            url = part.image_url.url
            match = _DATA_URL.match(url)
            if match:
                media_type, data = match.groups()
                return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
            if url.startswith(("http://", "https://")):
                return {"type": "image", "source": {"type": "url", "url": url}}
        self._logger.debug("Dropping unsupported content part for Anthropic: %s", getattr(part, "type", part))
        return None

    @staticmethod
    def _tool_use_block(call: ToolCall) -> dict[str, Any]:
        try:
            arguments = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError:
            arguments = {}
        return {
            "type": "tool_use",
            "id": call.id,
            "name": call.function.name,
            "input": arguments if isinstance(arguments, dict) else {},
        }

    @staticmethod
    def _serialize_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "name": tool.function.name,
                "description": tool.function.description or "",
                "input_schema": tool.function.parameters,
            }
            for tool in tools
        ]

    @staticmethod
    def _serialize_tool_choice(choice: str | dict[str, Any] | None) -> dict[str, Any] | None:
        if choice == "auto":
            return {"type": "auto"}
        if choice == "required":
            return {"type": "any"}
        if choice == "none":
            return {"type": "none"}
        if isinstance(choice, dict) and choice.get("type") == "function":
            return {"type": "tool", "name": (choice.get("function") or {}).get("name")}
        return None

    # -- response ----------------------------------------------------------

    def translate_response(self, data: Mapping[str, Any], req: ChatRequest | None = None) -> ChatResponse:
        if data.get("type") == "error":
            error = data.get("error") or {}
            raise TranslationError(f"Anthropic returned an error body: {error.get('message', error)}")

        texts: list[str] = []
        tool_calls: list[ToolCall] = []
        for index, block in enumerate(data.get("content") or []):
            if block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id") or f"call_{index}",
                        function=FunctionCall(
                            name=block.get("name", ""),
                            arguments=json.dumps(block.get("input") or {}),
                        ),
                        index=index,
                    )
                )

        message = Message(
            role="assistant",
            content="".join(texts) if texts else None,
            tool_calls=tool_calls or None,
        )
        return ChatResponse(
            id=data.get("id") or new_completion_id(),
            model=data.get("model") or (req.model if req else None),
            choices=[Choice(message=message, finish_reason=data.get("stop_reason"))],
            usage=normalize_usage(data.get("usage")),
        )

    # -- streaming ---------------------------------------------------------

    def translate_stream_chunk(
        self,
        chunk: str | bytes | Mapping[str, Any],
        context: StreamContext | None = None,
    ) -> StreamChunk | str | None:
        event = self._decode_event(chunk)
        if not isinstance(event, Mapping):
            return None
        chunk = event

        context = context or StreamContext()
        kind = chunk.get("type")

        if kind == "message_start":
            message = chunk.get("message") or {}
            context.response_id = message.get("id") or context.response_id
            context.model = message.get("model") or context.model
            context.extra["input_tokens"] = (message.get("usage") or {}).get("input_tokens")
            return self._chunk(context, ChunkDelta(role="assistant", content=""))

        if kind == "content_block_start":
            block = chunk.get("content_block") or {}
            if block.get("type") != "tool_use":
                return None
            index = chunk.get("index") or 0
            return self._chunk(
                context,
                ChunkDelta(
                    tool_calls=[
                        ToolCallDelta(
                            index=index,
                            id=block.get("id"),
                            type="function",
                            function=FunctionCallDelta(name=block.get("name"), arguments=""),
                        )
                    ]
                ),
            )

        if kind == "content_block_delta":
            delta = chunk.get("delta") or {}
            if delta.get("type") == "text_delta":
                return self._chunk(context, ChunkDelta(content=delta.get("text", "")))
            if delta.get("type") == "input_json_delta":
                return self._chunk(
                    context,
                    ChunkDelta(
                        tool_calls=[
                            ToolCallDelta(
                                index=chunk.get("index") or 0,
                                function=FunctionCallDelta(arguments=delta.get("partial_json", "")),
                            )
                        ]
                    ),
                )
            return None

        if kind == "message_delta":
            result = self._chunk(
                context,
                ChunkDelta(),
                finish_reason=(chunk.get("delta") or {}).get("stop_reason"),
            )
            raw_usage = chunk.get("usage")
            if raw_usage:
                usage = {"input_tokens": context.extra.get("input_tokens"), **raw_usage}
                result.usage = normalize_usage(usage) or Usage()
            return result

        if kind == "message_stop":
            return DONE

        # ping, content_block_stop and unknown events carry nothing for the client
        return None

    @staticmethod
    def _chunk(
        context: StreamContext,
        delta: ChunkDelta,
        *,
        finish_reason: str | None = None,
    ) -> StreamChunk:
        if context.response_id is None:
            context.response_id = new_completion_id()
        return StreamChunk.of(
            delta,
            model=context.model,
            finish_reason=finish_reason,
            chunk_id=context.response_id,
        )
