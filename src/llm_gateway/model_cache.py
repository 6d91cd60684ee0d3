"""Per-user, per-provider cache of upstream model lists."""

from __future__ import annotations

import time
from typing import Any

_DEFAULT_TTL_S = 300.0


class ModelCache:
    """In-memory cache; owners call ``invalidate`` when provider settings change."""

    def __init__(self, ttl_s: float = _DEFAULT_TTL_S) -> None:
        self._ttl_s = ttl_s
        self._entries: dict[tuple[str, str], tuple[float, list[dict[str, Any]]]] = {}

    @staticmethod
    def _key(user_id: str | None, provider_id: str) -> tuple[str, str]:
        return (user_id or "", provider_id)

    def get(self, user_id: str | None, provider_id: str) -> list[dict[str, Any]] | None:
        entry = self._entries.get(self._key(user_id, provider_id))
        if entry is None:
            return None
        stored_at, models = entry
        if self._ttl_s > 0 and time.monotonic() - stored_at > self._ttl_s:
            del self._entries[self._key(user_id, provider_id)]
            return None
        return list(models)

    def set(self, user_id: str | None, provider_id: str, models: list[dict[str, Any]]) -> None:
        self._entries[self._key(user_id, provider_id)] = (time.monotonic(), list(models))

    def invalidate(self, user_id: str | None) -> None:
        """Drop every cached list belonging to ``user_id``."""
        owner = user_id or ""
        for key in [k for k in self._entries if k[0] == owner]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()
