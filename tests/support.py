"""Shared fakes for the test suite."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any, TypeVar, Union

import httpx

from llm_gateway.providers.base import BaseProvider, StreamContext
from llm_gateway.retry import RetryPolicy
from llm_gateway.sse import response_to_chunks
from llm_gateway.types import (
    ChatRequest,
    ChatResponse,
    Choice,
    FunctionCall,
    Message,
    ProviderConfig,
    StreamChunk,
    ToolCall,
    Usage,
)

T = TypeVar("T")

NO_WAIT = RetryPolicy(max_retries=0, initial_delay_ms=0, jitter_factor=0)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def sse_response(*events: Any, status: int = 200) -> httpx.Response:
    """Build an upstream ``text/event-stream`` response from JSON-able events."""
    body = "".join(
        f"data: {event if isinstance(event, str) else json.dumps(event)}\n\n" for event in events
    )
    return httpx.Response(
        status,
        headers={"content-type": "text/event-stream"},
        content=body.encode(),
    )


class _DroppedStream(httpx.AsyncByteStream):
    async def __aiter__(self) -> AsyncIterator[bytes]:
        raise httpx.ReadError("connection dropped")
        yield b""  # pragma: no cover


def dropped_sse_response() -> httpx.Response:
    """A 200 event-stream whose body fails on the first read."""
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        stream=_DroppedStream(),
    )


def openai_completion(content: str | None = "Hello world", **extra: Any) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    message.update(extra)
    return {
        "id": "chatcmpl-upstream",
        "object": "chat.completion",
        "created": 1,
        "model": "toy",
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
    }


def openai_chunk(delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
    return {
        "id": "chatcmpl-upstream",
        "object": "chat.completion.chunk",
        "created": 1,
        "model": "toy",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


async def collect(stream: AsyncIterator[T]) -> list[T]:
    items: list[T] = []
    async for item in stream:
        items.append(item)
    return items


def text_response(content: str, usage: Usage | None = None) -> ChatResponse:
    return ChatResponse(
        model="toy",
        choices=[Choice(message=Message(role="assistant", content=content), finish_reason="stop")],
        usage=usage,
    )


def tool_call_response(*calls: tuple[str, str, str], content: str | None = None) -> ChatResponse:
    """Assistant turn requesting ``(id, name, arguments)`` tool calls."""
    tool_calls = [
        ToolCall(id=call_id, function=FunctionCall(name=name, arguments=arguments), index=i)
        for i, (call_id, name, arguments) in enumerate(calls)
    ]
    return ChatResponse(
        model="toy",
        choices=[
            Choice(
                message=Message(role="assistant", content=content, tool_calls=tool_calls),
                finish_reason="tool_calls",
            )
        ],
    )


Round = Union[ChatResponse, list[StreamChunk], BaseException]


class ScriptedProvider(BaseProvider):
    """Provider that replays canned rounds and records every request it sees."""

    name = "scripted"

    def __init__(self, *rounds: Round, model: str | None = "toy") -> None:
        super().__init__(
            ProviderConfig(id="scripted", api_key="test", model=model),
            client=mock_client(lambda request: httpx.Response(500)),
            retry_policy=NO_WAIT,
        )
        self.rounds = list(rounds)
        self.requests: list[ChatRequest] = []
        self.closed = 0

    def _next(self, req: ChatRequest) -> Round:
        self.requests.append(req)
        if not self.rounds:
            raise AssertionError("no scripted round left")
        return self.rounds.pop(0)

    async def chat(self, req: ChatRequest) -> ChatResponse:
        item = self._next(req)
        if isinstance(item, BaseException):
            raise item
        assert isinstance(item, ChatResponse)
        return item

    async def stream(self, req: ChatRequest) -> AsyncIterator[StreamChunk]:  # type: ignore[override]
        item = self._next(req)
        if isinstance(item, BaseException):
            raise item
        chunks = response_to_chunks(item) if isinstance(item, ChatResponse) else item
        try:
            for chunk in chunks:
                yield chunk
        finally:
            self.closed += 1

    async def list_models(self) -> list[dict[str, Any]]:
        return [{"id": "toy"}]

    def translate_request(self, req: ChatRequest) -> dict[str, Any]:
        return req.model_dump(exclude_none=True)

    def translate_response(self, data: Mapping[str, Any], req: ChatRequest | None = None) -> ChatResponse:
        return ChatResponse.model_validate(data)

    def translate_stream_chunk(
        self,
        chunk: str | bytes | Mapping[str, Any],
        context: StreamContext | None = None,
    ) -> StreamChunk | str | None:
        return None

    def _endpoint(self, req: ChatRequest, *, stream: bool) -> tuple[str, dict[str, str]]:
        return "/chat", {}

    def _auth_headers(self) -> dict[str, str]:
        return {}
