"""Google Gemini (Generative Language API) provider."""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Mapping
from typing import Any

from llm_gateway.errors import TranslationError
from llm_gateway.providers.base import BaseProvider, StreamContext
from llm_gateway.types import (
    ChatRequest,
    ChatResponse,
    Choice,
    ChunkDelta,
    FunctionCall,
    FunctionCallDelta,
    ImageUrlPart,
    InputAudioPart,
    Message,
    StreamChunk,
    TextPart,
    ToolCall,
    ToolCallDelta,
    new_completion_id,
)
from llm_gateway.usage import extract_usage

_DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}
_ROLES = {"assistant": "model", "user": "user", "tool": "user"}
_TOOL_MODES = {"auto": "AUTO", "none": "NONE", "required": "ANY"}
_ID_UNSAFE = re.compile(r"[^a-zA-Z0-9_]")


def map_finish_reason(reason: str | None) -> str | None:
    if not reason:
        return None
    return _FINISH_REASONS.get(reason, "stop")


def tool_call_id(response_id: str | None, index: int) -> str:
    """Stable id for the ``index``-th function call of a Gemini response."""
    if response_id:
        return _ID_UNSAFE.sub("", f"call_{response_id}_{index}")
    return f"call_{uuid.uuid4().hex[:9]}"


class GeminiProvider(BaseProvider):
    """Translate canonical chat requests to and from ``generateContent``."""

    name = "gemini"
    _default_base_url = _DEFAULT_BASE_URL

    def _auth_headers(self) -> dict[str, str]:
        # the key travels as a query parameter
        return {}

    def _endpoint(self, req: ChatRequest, *, stream: bool) -> tuple[str, dict[str, str]]:
        model = self._resolve_model(req)
        params = {"key": self.config.api_key} if self.config.api_key else {}
        if stream:
            return f"/models/{model}:streamGenerateContent", {**params, "alt": "sse"}
        return f"/models/{model}:generateContent", params

    def _models_endpoint(self) -> tuple[str, dict[str, str]]:
        return "/models", {"key": self.config.api_key} if self.config.api_key else {}

    @staticmethod
    def _normalize_models(data: Mapping[str, Any]) -> list[dict[str, Any]]:
        models = []
        for item in data.get("models") or []:
            name = item.get("name") or ""
            model_id = name[len("models/") :] if name.startswith("models/") else name
            if not model_id:
                continue
            models.append(
                {
                    "id": model_id,
                    "name": item.get("displayName") or model_id,
                    "description": item.get("description"),
                }
            )
        return models

    # -- request -----------------------------------------------------------

    def translate_request(self, req: ChatRequest) -> dict[str, Any]:
        model = self._resolve_model(req)
        payload: dict[str, Any] = {"contents": [], "generationConfig": {}}

        system_parts = [{"text": m.text()} for m in req.messages if m.role == "system"]
        if system_parts:
            payload["system_instruction"] = {"parts": system_parts}

        conversation = [m for m in req.messages if m.role != "system"]
        call_names = {
            call.id: call.function.name
            for message in conversation
            for call in message.tool_calls or []
        }
        for message in conversation:
            parts = self._serialize_parts(message, call_names)
            if parts:
                payload["contents"].append({"role": _ROLES[message.role], "parts": parts})

        if req.tools:
            payload["tools"] = [
                {
                    "function_declarations": [
                        {
                            "name": tool.function.name,
                            "description": tool.function.description or "",
                            "parameters": tool.function.parameters,
                        }
                        for tool in req.tools
                    ]
                }
            ]
            tool_config = self._serialize_tool_choice(req.tool_choice)
            if tool_config is not None:
                payload["tool_config"] = {"function_calling_config": tool_config}

        config = payload["generationConfig"]
        if req.max_tokens:
            config["maxOutputTokens"] = req.max_tokens
        if req.temperature is not None:
            config["temperature"] = req.temperature
        if req.top_p is not None:
            config["topP"] = req.top_p
        if req.top_k is not None:
            config["topK"] = req.top_k
        if req.stop:
            config["stopSequences"] = [req.stop] if isinstance(req.stop, str) else list(req.stop)
        if "image" in model.lower():
            config["responseModalities"] = ["IMAGE", "TEXT"]
        return payload

    def _serialize_parts(self, message: Message, call_names: dict[str, str]) -> list[dict[str, Any]]:
        if message.role == "tool":
            name = call_names.get(message.tool_call_id or "") or message.name or "unknown_tool"
            return [
                {
                    "functionResponse": {
                        "name": name,
                        "response": {"name": name, "content": message.text()},
                    }
                }
            ]

        parts: list[dict[str, Any]] = []
        if isinstance(message.content, str):
            if message.content:
                parts.append({"text": message.content})
        elif message.content:
            for part in message.content:
                converted = self._serialize_content_part(part)
                if converted is not None:
                    parts.append(converted)

        for call in message.tool_calls or []:
            try:
                args = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError as exc:
                raise TranslationError(
                    f"Tool call {call.id} has non-JSON arguments: {call.function.arguments!r}"
                ) from exc
            function_part: dict[str, Any] = {"functionCall": {"name": call.function.name, "args": args}}
            if call.gemini_thought_signature:
                function_part["thoughtSignature"] = call.gemini_thought_signature
            parts.append(function_part)
        return parts

    @staticmethod
    def _serialize_content_part(part: Any) -> dict[str, Any] | None:
        if isinstance(part, TextPart):
            return {"text": part.text}
        if isinstance(part, ImageUrlPart):
            url = part.image_url.url
            if url.startswith("data:") and ";base64," in url:
                header, data = url.split(";base64,", 1)
                return {"inline_data": {"mime_type": header[len("data:") :], "data": data}}
            return None
        if isinstance(part, InputAudioPart):
            audio = part.input_audio
            if not audio.data or not audio.format:
                return None
            mime = audio.format if audio.format.startswith("audio/") else f"audio/{audio.format}"
            return {"inline_data": {"mime_type": mime, "data": audio.data}}
        return None

    @staticmethod
    def _serialize_tool_choice(choice: str | dict[str, Any] | None) -> dict[str, Any] | None:
        if isinstance(choice, str) and choice in _TOOL_MODES:
            return {"mode": _TOOL_MODES[choice]}
        if isinstance(choice, dict) and choice.get("type") == "function":
            name = (choice.get("function") or {}).get("name")
            return {"mode": "ANY", "allowed_function_names": [name]}
        return None

    # -- response ----------------------------------------------------------

    @staticmethod
    def _split_parts(parts: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
        text = "".join(
            p.get("text", "") for p in parts if "text" in p and not p.get("thought")
        )
        calls = [p for p in parts if "functionCall" in p]
        return text, calls

    def translate_response(self, data: Mapping[str, Any], req: ChatRequest | None = None) -> ChatResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            raise TranslationError(f"Gemini response has no candidates (feedback={feedback})")
        candidate = candidates[0]
        response_id = data.get("responseId")
        text, calls = self._split_parts((candidate.get("content") or {}).get("parts") or [])

        tool_calls = [
            ToolCall(
                id=tool_call_id(response_id, i),
                function=FunctionCall(
                    name=part["functionCall"].get("name", ""),
                    arguments=json.dumps(part["functionCall"].get("args") or {}),
                ),
                index=i,
                gemini_thought_signature=part.get("thoughtSignature")
                or part["functionCall"].get("thoughtSignature"),
            )
            for i, part in enumerate(calls)
        ]
        finish_reason = "tool_calls" if tool_calls else map_finish_reason(candidate.get("finishReason"))
        return ChatResponse(
            id=f"chatcmpl-{response_id}" if response_id else new_completion_id(),
            model=data.get("modelVersion") or (req.model if req else None) or self.get_default_model(),
            choices=[
                Choice(
                    message=Message(role="assistant", content=text or None, tool_calls=tool_calls or None),
                    finish_reason=finish_reason,
                )
            ],
            usage=extract_usage(data),
        )

    # -- streaming ---------------------------------------------------------

    def translate_stream_chunk(
        self,
        chunk: str | bytes | Mapping[str, Any],
        context: StreamContext | None = None,
    ) -> StreamChunk | str | None:
        event = self._decode_event(chunk)
        if not isinstance(event, Mapping):
            # Gemini has no [DONE] sentinel; the stream simply ends
            return None
        chunk = event

        candidates = chunk.get("candidates") or []
        if not candidates:
            self._logger.debug("Gemini chunk without candidates: %s", chunk)
            return None
        candidate = candidates[0]
        response_id = chunk.get("responseId")
        text, calls = self._split_parts((candidate.get("content") or {}).get("parts") or [])

        delta = ChunkDelta(role="assistant", content=text or None)
        if calls:
            delta.tool_calls = [
                ToolCallDelta(
                    index=i,
                    id=tool_call_id(response_id, i),
                    type="function",
                    function=FunctionCallDelta(
                        name=part["functionCall"].get("name"),
                        arguments=json.dumps(part["functionCall"].get("args") or {}),
                    ),
                    gemini_thought_signature=part.get("thoughtSignature")
                    or part["functionCall"].get("thoughtSignature"),
                )
                for i, part in enumerate(calls)
            ]

        finish_reason = "tool_calls" if calls else map_finish_reason(candidate.get("finishReason"))
        if finish_reason == "stop" and not text and not calls:
            # a bare STOP after tool-call content must not clobber finish_reason=tool_calls
            self._logger.debug("Suppressing empty Gemini STOP chunk")
            return None

        model = chunk.get("modelVersion") or (context.model if context else None)
        result = StreamChunk.of(
            delta,
            model=model,
            finish_reason=finish_reason,
            chunk_id=f"chatcmpl-{response_id}" if response_id else None,
        )
        result.usage = extract_usage(chunk)
        return result
