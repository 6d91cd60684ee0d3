"""Server-sent event framing helpers."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from typing import Any

import httpx

from llm_gateway.types import DONE, ChatResponse, ChunkDelta, StreamChunk, ToolCallDelta


def format_sse(data: StreamChunk | Mapping[str, Any] | str) -> str:
    """Frame one payload as ``data: <json>\\n\\n``."""
    if isinstance(data, StreamChunk):
        body = json.dumps(data.to_payload(), ensure_ascii=False)
    elif isinstance(data, str):
        body = data
    else:
        body = json.dumps(data, ensure_ascii=False)
    return f"data: {body}\n\n"


DONE_FRAME = format_sse(DONE)


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the ``data`` payload of every event in an upstream SSE body.

    Multi-line ``data:`` fields are joined with newlines; ``event:``, ``id:``
    and comment lines are ignored.
    """
    buffer: list[str] = []
    async for line in response.aiter_lines():
        line = line.rstrip("\r")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":") or not line.startswith("data:"):
            continue
        value = line[len("data:") :]
        buffer.append(value[1:] if value.startswith(" ") else value)
    if buffer:
        yield "\n".join(buffer)


def response_to_chunks(response: ChatResponse) -> list[StreamChunk]:
    """Break a full response into the chunk sequence a streaming upstream would send."""
    if not response.choices:
        return [StreamChunk(id=response.id, model=response.model, usage=response.usage)]
    choice = response.choices[0]
    message = choice.message
    delta = ChunkDelta(role="assistant", content=message.text() or None)
    if message.tool_calls:
        delta.tool_calls = [
            ToolCallDelta.model_validate({**call.model_dump(exclude_none=True), "index": i})
            for i, call in enumerate(message.tool_calls)
        ]
    chunk = StreamChunk.of(
        delta,
        model=response.model,
        finish_reason=choice.finish_reason,
        chunk_id=response.id,
    )
    chunk.usage = response.usage
    return [chunk]
