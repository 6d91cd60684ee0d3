"""Await work while honouring an abort event."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from typing import Any, TypeVar

T = TypeVar("T")

_END = object()


async def run_until_cancelled(work: Awaitable[T], cancel: asyncio.Event) -> tuple[bool, T | None]:
    """Await ``work`` unless ``cancel`` fires first.

    Returns ``(True, result)`` when the work finished and ``(False, None)``
    when the event won; the losing work is cancelled and awaited before
    returning, so its cleanup has run. Errors raised by the work propagate.
    """
    if cancel.is_set():
        if asyncio.iscoroutine(work):
            work.close()
        return False, None

    task = asyncio.ensure_future(work)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait({task})

    if task.cancelled():
        return False, None
    return True, task.result()


async def _next_or_end(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


async def next_or_none(iterator: AsyncIterator[T], cancel: asyncio.Event) -> T | None:
    """Next item of ``iterator``; ``None`` once it is exhausted or ``cancel`` fires."""
    finished, item = await run_until_cancelled(_next_or_end(iterator), cancel)
    if not finished or item is _END:
        return None
    return item
