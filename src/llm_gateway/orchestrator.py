"""Multi-round tool-calling loop.

Each round asks the model for a reply. When the reply requests tools, they are
executed server-side, their outputs are appended to the conversation and the
model is asked again, until it answers without tools or the iteration limit is
hit. Progress is reported as canonical stream chunks.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field, replace

from llm_gateway.cancellation import next_or_none, run_until_cancelled
from llm_gateway.providers.base import BaseProvider
from llm_gateway.tools import ToolRegistry
from llm_gateway.types import (
    ChatRequest,
    ChunkDelta,
    FunctionCall,
    FunctionCallDelta,
    Message,
    StreamChunk,
    ToolCall,
    ToolCallDelta,
    ToolOutput,
    Usage,
    new_completion_id,
)

_logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10
ITERATION_LIMIT_NOTICE = "\n\n[Maximum iterations reached]"


class Phase(enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class OrchestrationState:
    """Immutable snapshot of one orchestration; replaced on every transition."""

    iteration: int = 0
    messages: tuple[Message, ...] = ()
    phase: Phase = Phase.AWAITING_MODEL
    pending_calls: tuple[ToolCall, ...] = ()
    limit_reached: bool = False

    @property
    def terminal(self) -> bool:
        return self.phase is Phase.TERMINAL


@dataclass(frozen=True)
class RoundResult:
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    usage: Usage | None = None


def begin_round(state: OrchestrationState, max_iterations: int) -> OrchestrationState:
    """Enter a model round, or terminate once the iteration budget is spent."""
    iteration = state.iteration + 1
    if iteration > max_iterations:
        return replace(state, iteration=iteration, phase=Phase.TERMINAL, limit_reached=True)
    return replace(state, iteration=iteration, phase=Phase.AWAITING_MODEL)


def apply_model_result(state: OrchestrationState, result: RoundResult) -> OrchestrationState:
    if not result.tool_calls:
        final = Message(role="assistant", content=result.content)
        return replace(state, messages=(*state.messages, final), phase=Phase.TERMINAL)
    return replace(state, phase=Phase.EXECUTING_TOOLS, pending_calls=result.tool_calls)


def apply_tool_outputs(
    state: OrchestrationState,
    content: str,
    outputs: Sequence[ToolOutput],
) -> OrchestrationState:
    assistant = Message(
        role="assistant",
        content=content or None,
        tool_calls=list(state.pending_calls),
    )
    tool_messages = [
        Message(role="tool", tool_call_id=out.tool_call_id, name=out.name, content=out.output)
        for out in outputs
    ]
    return replace(
        state,
        messages=(*state.messages, assistant, *tool_messages),
        phase=Phase.AWAITING_MODEL,
        pending_calls=(),
    )


@dataclass
class _CallSlot:
    id: str | None = None
    name: str = ""
    arguments: str = ""
    thought_signature: str | None = None


@dataclass
class ToolCallAccumulator:
    """Merge streamed tool-call fragments into complete calls, in issue order."""

    _slots: list[_CallSlot] = field(default_factory=list)
    _by_index: dict[int, int] = field(default_factory=dict)

    def add(self, delta: ToolCallDelta) -> None:
        index = delta.index or 0
        position = self._by_index.get(index)
        if position is None or (
            delta.id and self._slots[position].id and delta.id != self._slots[position].id
        ):
            self._slots.append(_CallSlot())
            position = len(self._slots) - 1
            self._by_index[index] = position
        slot = self._slots[position]
        if delta.id and not slot.id:
            slot.id = delta.id
        if delta.function is not None:
            if delta.function.name:
                slot.name = delta.function.name
            if delta.function.arguments:
                slot.arguments += delta.function.arguments
        if delta.gemini_thought_signature:
            slot.thought_signature = delta.gemini_thought_signature

    def calls(self) -> tuple[ToolCall, ...]:
        return tuple(
            ToolCall(
                id=slot.id or f"call_{uuid.uuid4().hex[:12]}",
                function=FunctionCall(name=slot.name, arguments=slot.arguments or "{}"),
                index=i,
                gemini_thought_signature=slot.thought_signature,
            )
            for i, slot in enumerate(self._slots)
        )


def _add_usage(total: Usage | None, extra: Usage | None) -> Usage | None:
    if extra is None:
        return total
    if total is None:
        return extra.model_copy()

    def _sum(a: int | None, b: int | None) -> int | None:
        return None if a is None and b is None else (a or 0) + (b or 0)

    return Usage(
        prompt_tokens=_sum(total.prompt_tokens, extra.prompt_tokens),
        completion_tokens=_sum(total.completion_tokens, extra.completion_tokens),
        total_tokens=_sum(total.total_tokens, extra.total_tokens),
        reasoning_tokens=_sum(total.reasoning_tokens, extra.reasoning_tokens),
    )


class ToolOrchestrator:
    """Drive the model/tool loop for one request and yield its chunks."""

    def __init__(
        self,
        provider: BaseProvider,
        registry: ToolRegistry,
        *,
        max_iterations: int = MAX_ITERATIONS,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._max_iterations = max_iterations
        self._cancel = cancel or asyncio.Event()
        self._completion_id = new_completion_id()
        self._model: str | None = None

    def _chunk(self, delta: ChunkDelta, finish_reason: str | None = None) -> StreamChunk:
        return StreamChunk.of(
            delta,
            model=self._model,
            finish_reason=finish_reason,
            chunk_id=self._completion_id,
        )

    async def run(self, req: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Yield content, tool-call and tool-output chunks until the loop ends."""
        self._model = req.model or self._provider.get_default_model()
        state = OrchestrationState(messages=tuple(req.messages))
        usage: Usage | None = None

        while not state.terminal:
            state = begin_round(state, self._max_iterations)
            if state.limit_reached:
                _logger.warning("Tool loop hit the %d-iteration limit", self._max_iterations)
                yield self._chunk(ChunkDelta(content=ITERATION_LIMIT_NOTICE))
                break
            if self._cancel.is_set():
                return

            round_req = req.model_copy(update={"messages": list(state.messages)})
            result = RoundResult()
            if req.stream:
                async for item in self._stream_round(round_req):
                    if isinstance(item, RoundResult):
                        result = item
                    else:
                        yield item
            else:
                finished, chat_result = await run_until_cancelled(self._chat_round(round_req), self._cancel)
                if not finished or chat_result is None:
                    return
                result = chat_result
                if result.content:
                    yield self._chunk(ChunkDelta(role="assistant", content=result.content))
            usage = _add_usage(usage, result.usage)
            if self._cancel.is_set():
                return

            state = apply_model_result(state, result)
            if state.terminal:
                break

            yield self._chunk(
                ChunkDelta(
                    tool_calls=[
                        ToolCallDelta(
                            index=call.index,
                            id=call.id,
                            type="function",
                            function=FunctionCallDelta(
                                name=call.function.name,
                                arguments=call.function.arguments,
                            ),
                            gemini_thought_signature=call.gemini_thought_signature,
                        )
                        for call in state.pending_calls
                    ]
                )
            )

            outputs: list[ToolOutput] = []
            for call in state.pending_calls:
                if self._cancel.is_set():
                    return
                _logger.info("Executing tool %s (call %s)", call.function.name, call.id)
                finished, text = await run_until_cancelled(
                    self._registry.execute(call.function.name, call.function.arguments),
                    self._cancel,
                )
                if not finished or text is None:
                    _logger.info("Tool %s abandoned after abort", call.function.name)
                    return
                output = ToolOutput(tool_call_id=call.id, name=call.function.name, output=text)
                outputs.append(output)
                yield self._chunk(ChunkDelta(tool_output=output))
            state = apply_tool_outputs(state, result.content, outputs)

        final = self._chunk(ChunkDelta(), finish_reason="stop")
        final.usage = usage
        yield final

    async def _chat_round(self, req: ChatRequest) -> RoundResult:
        response = await self._provider.chat(req)
        if not response.choices:
            return RoundResult(usage=response.usage)
        message = response.choices[0].message
        return RoundResult(
            content=message.text(),
            tool_calls=tuple(message.tool_calls or ()),
            usage=response.usage,
        )

    async def _stream_round(self, req: ChatRequest) -> AsyncIterator[StreamChunk | RoundResult]:
        """Forward content deltas live; the last item is the round's ``RoundResult``."""
        accumulator = ToolCallAccumulator()
        content: list[str] = []
        usage: Usage | None = None
        stream = self._provider.stream(req)
        try:
            while True:
                chunk = await next_or_none(stream, self._cancel)
                if chunk is None:
                    break
                if chunk.usage is not None:
                    usage = chunk.usage
                delta = chunk.delta
                for tool_delta in delta.tool_calls or []:
                    accumulator.add(tool_delta)
                if delta.content or (delta.role and not delta.tool_calls):
                    if delta.content:
                        content.append(delta.content)
                    yield self._chunk(ChunkDelta(role=delta.role, content=delta.content))
        finally:
            await stream.aclose()
        yield RoundResult(content="".join(content), tool_calls=accumulator.calls(), usage=usage)
