"""Canonical (OpenAI-shaped) request/response models shared by all providers."""

from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["system", "user", "assistant", "tool"]

DONE = "[DONE]"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


class ImageUrl(BaseModel):
    url: str
    detail: str | None = None


class InputAudio(BaseModel):
    data: str
    format: str


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrlPart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


class InputAudioPart(BaseModel):
    type: Literal["input_audio"] = "input_audio"
    input_audio: InputAudio


ContentPart = Annotated[
    Union[TextPart, ImageUrlPart, InputAudioPart],
    Field(discriminator="type"),
]


class FunctionCall(BaseModel):
    name: str
    # JSON-encoded argument object, exactly as the model produced it
    arguments: str = "{}"


class ToolCall(BaseModel):
    """A complete tool invocation requested by an assistant turn."""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall
    index: int | None = None
    gemini_thought_signature: str | None = None


class FunctionCallDelta(BaseModel):
    name: str | None = None
    arguments: str | None = None


class ToolCallDelta(BaseModel):
    """Streamed fragment of a tool call; every field may be missing."""

    index: int | None = None
    id: str | None = None
    type: Literal["function"] | None = None
    function: FunctionCallDelta | None = None
    gemini_thought_signature: str | None = None


class Message(BaseModel):
    """Single chat message."""

    role: Role
    content: str | list[ContentPart] | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    def text(self) -> str:
        """Concatenate the textual content of the message."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))


class FunctionSpec(BaseModel):
    name: str
    description: str | None = None
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class ToolSpec(BaseModel):
    """OpenAI-style function tool definition."""

    type: Literal["function"] = "function"
    function: FunctionSpec


class ChatRequest(BaseModel):
    """Normalized request shared by all providers."""

    model_config = ConfigDict(extra="ignore")

    model: str | None = None
    messages: list[Message]
    tools: list[ToolSpec] | None = None
    tool_choice: str | dict[str, Any] | None = None
    stream: bool = False
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop: str | list[str] | None = None
    # routing hint; never forwarded upstream
    provider_id: str | None = None

    @model_validator(mode="after")
    def _check_invariants(self) -> ChatRequest:
        if not self.messages:
            raise ValueError("messages must contain at least one message")

        names = [tool.function.name for tool in self.tools or []]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate tool names: {', '.join(duplicates)}")

        issued: set[str] = set()
        for message in self.messages:
            if message.role == "assistant":
                issued = {call.id for call in message.tool_calls or []}
            elif message.role == "tool":
                if not message.tool_call_id:
                    raise ValueError("tool messages require tool_call_id")
                if message.tool_call_id not in issued:
                    raise ValueError(
                        f"tool_call_id '{message.tool_call_id}' does not match a "
                        "tool call of the preceding assistant message"
                    )
            else:
                issued = set()
        return self


class Usage(BaseModel):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    reasoning_tokens: int | None = None
    prompt_ms: float | None = None
    completion_ms: float | None = None


class Choice(BaseModel):
    index: int = 0
    message: Message
    finish_reason: str | None = None


class ChatResponse(BaseModel):
    """Canonical non-streaming chat completion."""

    id: str = Field(default_factory=new_completion_id)
    object: Literal["chat.completion"] = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str | None = None
    choices: list[Choice] = Field(default_factory=list)
    usage: Usage | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        for raw, choice in zip(payload["choices"], self.choices):
            raw["finish_reason"] = choice.finish_reason
            raw["message"].setdefault("content", None)
        return payload


class ToolOutput(BaseModel):
    tool_call_id: str
    name: str | None = None
    output: str


class ChunkDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Role | None = None
    content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None
    tool_output: ToolOutput | None = None


class StreamChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: str | None = None


class StreamChunk(BaseModel):
    """One increment of a streamed chat completion."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=new_completion_id)
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str | None = None
    choices: list[StreamChoice] = Field(default_factory=list)
    usage: Usage | None = None

    @classmethod
    def of(
        cls,
        delta: ChunkDelta,
        *,
        model: str | None = None,
        finish_reason: str | None = None,
        chunk_id: str | None = None,
    ) -> StreamChunk:
        """Build a single-choice chunk."""
        choice = StreamChoice(delta=delta, finish_reason=finish_reason)
        if chunk_id is None:
            return cls(model=model, choices=[choice])
        return cls(id=chunk_id, model=model, choices=[choice])

    @property
    def delta(self) -> ChunkDelta:
        return self.choices[0].delta if self.choices else ChunkDelta()

    @property
    def finish_reason(self) -> str | None:
        return self.choices[0].finish_reason if self.choices else None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        for raw, choice in zip(payload["choices"], self.choices):
            raw["finish_reason"] = choice.finish_reason
        return payload


class ProviderConfig(BaseModel):
    """Resolved provider settings handed to an adapter."""

    id: str | None = None
    type: str = "openai"
    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_s: float = 120.0
