"""Classification-driven retry with exponential backoff for upstream calls.

``retry_with_backoff`` wraps a single upstream HTTP exchange. The wrapped
coroutine either returns an ``httpx.Response`` (which may carry an error
status) or raises. Error responses are converted into ``UpstreamError`` for
classification; non-retryable error responses are handed back untouched so the
caller can decide how to surface them.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from llm_gateway.errors import GatewayError, UpstreamError

T = TypeVar("T")

_logger = logging.getLogger(__name__)

_ERROR_PREVIEW_CHARS = 200


def status_of(error: BaseException) -> int | None:
    """Return the HTTP status carried by an error, if any."""
    value = getattr(error, "status", None)
    if isinstance(value, int) and 100 <= value <= 599:
        return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def is_retryable_status(status: int | None) -> bool:
    return status == 429 or (status is not None and 500 <= status < 600)


def default_should_retry(error: BaseException) -> bool:
    """429 and 5xx are retried, other statuses are not."""
    if isinstance(error, asyncio.CancelledError):
        return False
    status = status_of(error)
    if status is None:
        # transport failures retry like a 5xx; local gateway faults never do
        return isinstance(error, UpstreamError) or not isinstance(error, GatewayError)
    return is_retryable_status(status)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy; one instance per upstream call site."""

    max_retries: int = 3
    initial_delay_ms: float = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: float = 60000
    jitter_factor: float = 0.1
    should_retry: Callable[[BaseException], bool] = default_should_retry

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("RetryPolicy.max_retries must be >= 0")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("RetryPolicy delays must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("RetryPolicy.jitter_factor must be within [0, 1]")


def compute_delay_ms(policy: RetryPolicy, retry_index: int) -> float:
    """Delay before retry ``retry_index`` (1 for the first retry)."""
    base = policy.initial_delay_ms * policy.backoff_multiplier ** max(0, retry_index - 1)
    capped = min(base, policy.max_delay_ms)
    if policy.jitter_factor == 0:
        return capped
    jitter = capped * policy.jitter_factor * (random.random() * 2 - 1)  # noqa: S311
    return max(0.0, capped + jitter)


async def _error_from_response(response: httpx.Response) -> UpstreamError:
    try:
        await response.aread()
        body = response.text
    except httpx.HTTPError:
        body = "Could not read error body"
    error = UpstreamError(
        f"Upstream API error ({response.status_code}): {body}",
        status=response.status_code,
        retry_after_ms=_retry_after_ms(response),
    )
    error.response = response  # type: ignore[attr-defined]
    return error


def _retry_after_ms(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds * 1000 if seconds >= 0 else None


async def _close_quietly(response: Any) -> None:
    close = getattr(response, "aclose", None)
    if close is not None:
        await close()


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
) -> T:
    """Run ``fn`` until it succeeds, is not retryable, or retries run out."""
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_retries + 1):
        try:
            result = await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            status = status_of(exc)
            if attempt < policy.max_retries and policy.should_retry(exc):
                delay = getattr(exc, "retry_after_ms", None)
                if delay is None:
                    delay = compute_delay_ms(policy, attempt + 1)
                _logger.warning(
                    "Retryable upstream error (attempt %d/%d, status=%s, retry in %.0fms): %s",
                    attempt + 1, policy.max_retries, status, delay, exc,
                )
                await asyncio.sleep(delay / 1000)
                continue
            raise

        if not isinstance(result, httpx.Response) or result.status_code < 400:
            if attempt > 0:
                _logger.info("Upstream request succeeded after %d retries", attempt)
            return result

        error = await _error_from_response(result)
        if attempt < policy.max_retries and policy.should_retry(error):
            delay = error.retry_after_ms
            if delay is None:
                delay = compute_delay_ms(policy, attempt + 1)
            _logger.warning(
                "Retryable upstream status %d (attempt %d/%d, retry in %.0fms): %s",
                result.status_code, attempt + 1, policy.max_retries, delay,
                str(error)[:_ERROR_PREVIEW_CHARS],
            )
            await _close_quietly(result)
            await asyncio.sleep(delay / 1000)
            continue

        if is_retryable_status(result.status_code):
            await _close_quietly(result)
            raise error
        return result

    raise AssertionError("unreachable: retry loop always returns or raises")


def with_retry(
    fn: Callable[..., Awaitable[T]],
    policy: RetryPolicy | None = None,
) -> Callable[..., Awaitable[T]]:
    """Wrap a coroutine function so every call goes through ``retry_with_backoff``."""

    async def _wrapped(*args: Any, **kwargs: Any) -> T:
        return await retry_with_backoff(lambda: fn(*args, **kwargs), policy)

    return _wrapped
