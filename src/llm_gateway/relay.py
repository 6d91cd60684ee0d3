"""Relay canonical chunks to the client as server-sent events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from llm_gateway.cancellation import next_or_none
from llm_gateway.errors import GatewayError
from llm_gateway.orchestrator import ToolCallAccumulator
from llm_gateway.sse import DONE_FRAME, format_sse
from llm_gateway.types import ChatResponse, Choice, Message, StreamChunk, Usage

_logger = logging.getLogger(__name__)

_GENERIC_STREAM_ERROR = "The upstream stream failed unexpectedly."


class Persistence(Protocol):
    """Callbacks the relay uses to record the assistant message."""

    def append_assistant_content(self, delta: str) -> None: ...

    def finalize_assistant_message(self, content: str, finish_reason: str | None) -> None: ...

    def mark_assistant_error(self, error: BaseException | None) -> None: ...


class NullPersistence:
    """Persistence that records nothing."""

    def append_assistant_content(self, delta: str) -> None:
        return None

    def finalize_assistant_message(self, content: str, finish_reason: str | None) -> None:
        return None

    def mark_assistant_error(self, error: BaseException | None) -> None:
        return None


class StreamRelay:
    """Turn a chunk iterator into SSE frames with clean failure semantics.

    ``start`` must be awaited before ``frames``; it pulls the first chunk so
    that an upstream failure before any byte is written can still be answered
    with a plain JSON error.
    """

    def __init__(
        self,
        chunks: AsyncIterator[StreamChunk],
        *,
        persistence: Persistence | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._chunks = chunks
        self._persistence = persistence or NullPersistence()
        self._cancel = cancel or asyncio.Event()
        self._first: StreamChunk | None = None
        self._exhausted = False
        self._started = False
        self._content: list[str] = []
        self._finish_reason: str | None = None

    async def start(self) -> None:
        """Pull the first chunk; failures propagate to the caller."""
        self._started = True
        try:
            self._first = await next_or_none(self._chunks, self._cancel)
        except BaseException as exc:
            self._persistence.mark_assistant_error(exc)
            await self._close_upstream()
            raise
        if self._first is None:
            self._exhausted = True

    def _record(self, chunk: StreamChunk) -> None:
        content = chunk.delta.content
        if content:
            self._content.append(content)
            self._persistence.append_assistant_content(content)
        if chunk.finish_reason is not None:
            self._finish_reason = chunk.finish_reason

    async def _next(self) -> StreamChunk | None:
        if self._first is not None:
            first, self._first = self._first, None
            return first
        if self._exhausted:
            return None
        # a pending upstream read is cancelled as soon as the abort event fires
        chunk = await next_or_none(self._chunks, self._cancel)
        if chunk is None:
            self._exhausted = True
        return chunk

    async def frames(self) -> AsyncIterator[str]:
        """Yield ``data: ...`` frames, ending with ``[DONE]`` on success."""
        if not self._started:
            await self.start()
        try:
            while True:
                chunk = await self._next()
                if self._cancel.is_set():
                    _logger.info("Stream aborted by client request")
                    self._persistence.mark_assistant_error(None)
                    return
                if chunk is None:
                    break
                self._record(chunk)
                yield format_sse(chunk)
        except asyncio.CancelledError:
            _logger.info("Client disconnected mid-stream")
            self._persistence.mark_assistant_error(None)
            raise
        except GatewayError as exc:
            _logger.warning("Upstream failed mid-stream: %s", exc)
            self._persistence.mark_assistant_error(exc)
            yield format_sse(exc.to_payload())
            return
        except Exception as exc:
            _logger.exception("Unexpected failure mid-stream")
            self._persistence.mark_assistant_error(exc)
            yield format_sse({"error": "upstream_error", "message": _GENERIC_STREAM_ERROR})
            return
        finally:
            await self._close_upstream()

        self._persistence.finalize_assistant_message("".join(self._content), self._finish_reason)
        yield DONE_FRAME

    async def _close_upstream(self) -> None:
        close = getattr(self._chunks, "aclose", None)
        if close is not None:
            await close()


async def collect_response(chunks: AsyncIterator[StreamChunk]) -> ChatResponse:
    """Fold a chunk sequence into a single non-streaming response."""
    content: list[str] = []
    calls = ToolCallAccumulator()
    answered: set[str] = set()
    response_id: str | None = None
    model: str | None = None
    finish_reason: str | None = None
    usage: Usage | None = None

    async for chunk in chunks:
        response_id = response_id or chunk.id
        model = model or chunk.model
        if chunk.usage is not None:
            usage = chunk.usage
        delta = chunk.delta
        if delta.content:
            content.append(delta.content)
        for call in delta.tool_calls or []:
            calls.add(call)
        if delta.tool_output is not None:
            answered.add(delta.tool_output.tool_call_id)
        if chunk.finish_reason is not None:
            finish_reason = chunk.finish_reason

    # calls already executed server-side are not handed back to the client
    tool_calls = [call for call in calls.calls() if call.id not in answered]
    message = Message(
        role="assistant",
        content="".join(content) if content else None,
        tool_calls=tool_calls or None,
    )
    response = ChatResponse(
        model=model,
        choices=[Choice(message=message, finish_reason=finish_reason)],
        usage=usage,
    )
    if response_id:
        response.id = response_id
    return response


@dataclass
class _AbortEntry:
    event: asyncio.Event
    user_id: str | None


class AbortRegistry:
    """In-flight streams keyed by request id, so they can be stopped externally."""

    def __init__(self) -> None:
        self._entries: dict[str, _AbortEntry] = {}

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def register(self, request_id: str, *, user_id: str | None = None) -> asyncio.Event:
        event = asyncio.Event()
        self._entries[request_id] = _AbortEntry(event=event, user_id=user_id)
        return event

    def unregister(self, request_id: str) -> None:
        self._entries.pop(request_id, None)

    def abort(self, request_id: str, *, user_id: str | None = None) -> bool:
        """Signal the stream; a user-scoped entry only yields to that user."""
        entry = self._entries.get(request_id)
        if entry is None:
            return False
        if entry.user_id is not None and entry.user_id != user_id:
            return False
        entry.event.set()
        return True
