"""Map provider usage/timing payloads onto the canonical ``Usage`` record."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from llm_gateway.types import Usage

_PROMPT_KEYS = (
    "prompt_tokens",
    "input_tokens",
    "input_token_count",
    "prompt_token_count",
    "promptTokenCount",
    "inputTokenCount",
)
_COMPLETION_KEYS = (
    "completion_tokens",
    "output_tokens",
    "output_token_count",
    "completion_token_count",
    "candidatesTokenCount",
    "outputTokenCount",
)
_TOTAL_KEYS = ("total_tokens", "total_token_count", "totalTokenCount")
_CACHE_CREATION_KEYS = ("cache_creation_input_tokens", "cacheCreationInputTokens")
_CACHE_READ_KEYS = ("cache_read_input_tokens", "cacheReadInputTokens")


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _first(source: Mapping[str, Any], keys: tuple[str, ...]) -> float | None:
    for key in keys:
        number = _to_number(source.get(key))
        if number is not None:
            return number
    return None


def _reasoning(usage: Mapping[str, Any]) -> float | None:
    direct = _first(usage, ("reasoning_tokens", "reasoning_token_count"))
    if direct is not None:
        return direct
    for details_key in ("completion_tokens_details", "output_tokens_details"):
        details = usage.get(details_key)
        if isinstance(details, Mapping):
            nested = _to_number(details.get("reasoning_tokens"))
            if nested is not None:
                return nested
    return _first(usage, ("thoughtsTokenCount", "thoughts_token_count"))


def _as_int(value: float | None) -> int | None:
    return None if value is None else int(value)


def normalize_usage(
    usage: Mapping[str, Any] | None,
    timings: Mapping[str, Any] | None = None,
) -> Usage | None:
    """Normalize any provider's usage block; ``None`` when nothing is known."""
    usage = usage if isinstance(usage, Mapping) else {}
    timings = timings if isinstance(timings, Mapping) else {}

    prompt = _first(usage, _PROMPT_KEYS)
    completion = _first(usage, _COMPLETION_KEYS)
    total = _first(usage, _TOTAL_KEYS)
    if total is None:
        parts = [
            prompt,
            completion,
            _first(usage, _CACHE_CREATION_KEYS),
            _first(usage, _CACHE_READ_KEYS),
        ]
        known = [part for part in parts if part is not None]
        total = sum(known) if known else None

    result = Usage(
        prompt_tokens=_as_int(prompt),
        completion_tokens=_as_int(completion),
        total_tokens=_as_int(total),
        reasoning_tokens=_as_int(_reasoning(usage)),
        prompt_ms=_to_number(timings.get("prompt_ms")),
        completion_ms=_to_number(timings.get("predicted_ms", timings.get("completion_ms"))),
    )
    if not result.model_dump(exclude_none=True):
        return None
    return result


def extract_usage(payload: Mapping[str, Any] | None) -> Usage | None:
    """Find usage on a response payload (top-level, Gemini metadata or nested)."""
    if not isinstance(payload, Mapping):
        return None
    timings = payload.get("timings")

    for candidate in (
        payload.get("usage"),
        payload.get("usageMetadata") or payload.get("usage_metadata"),
    ):
        found = normalize_usage(candidate, timings)
        if found is not None:
            return found

    response = payload.get("response")
    if isinstance(response, Mapping):
        found = normalize_usage(response.get("usage"))
        if found is not None:
            return found

    return normalize_usage(None, timings)
