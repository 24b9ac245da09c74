from __future__ import annotations

"""Caller-owned TTL cache for read-heavy views of the local replica."""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar


T = TypeVar("T")


@dataclass
class _Entry:
    value: Any
    expires_at: float


class Cache:
    """Values live under `namespace:key`; invalidation works per namespace."""

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(namespace: str, key: str | None) -> str:
        return f"{namespace}:{key}" if key else namespace

    def get(self, namespace: str, key: str | None = None) -> Any | None:
        full_key = self._key(namespace, key)
        entry = self._entries.get(full_key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[full_key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, namespace: str, value: Any, key: str | None = None, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[self._key(namespace, key)] = _Entry(value=value, expires_at=self._clock() + ttl)

    async def get_or_load(self, namespace: str, key: str | None, loader: Callable[[], Awaitable[T]]) -> T:
        cached = self.get(namespace, key)
        if cached is not None:
            return cached
        value = await loader()
        self.set(namespace, value, key)
        return value

    def invalidate(self, namespace: str) -> int:
        """Drop every entry in `namespace`; returns how many were removed."""

        prefix = f"{namespace}:"
        doomed = [key for key in self._entries if key == namespace or key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def stats(self) -> dict[str, Any]:
        return {"total_entries": len(self._entries), "hits": self.hits, "misses": self.misses}
