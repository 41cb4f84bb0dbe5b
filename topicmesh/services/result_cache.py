"""In-process TTL cache for coordination results.

Keys follow ``search_result:{topic_id}:{query_hash}:{options_hash}`` so a
topic's entries can be dropped together when its content changes.
"""
from __future__ import annotations

import asyncio
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Callable

from loguru import logger

CACHE_VERSION = 1
KEY_PREFIX = "search_result"


def _digest(material: str) -> str:
    return sha256(material.encode("utf-8")).hexdigest()[:16]


def cache_key(query: str, topic_id: str, options: dict[str, Any] | None = None) -> str:
    normalized_query = " ".join(query.split()).lower()
    options_material = json.dumps(options or {}, sort_keys=True, default=str)
    return (
        f"{KEY_PREFIX}:{topic_id}:"
        f"{_digest(f'v{CACHE_VERSION}|{normalized_query}')}:{_digest(options_material)}"
    )


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


class ResultCache:
    def __init__(
        self,
        ttl_seconds: float = 7 * 24 * 3600,
        max_entries: int = 512,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self.enabled = enabled
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    async def get(self, query: str, topic_id: str, options: dict[str, Any] | None = None) -> Any | None:
        if not self.enabled:
            return None
        key = cache_key(query, topic_id, options)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.value

    async def set(self, query: str, topic_id: str, value: Any, options: dict[str, Any] | None = None) -> None:
        if not self.enabled:
            return
        key = cache_key(query, topic_id, options)
        async with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def invalidate(self, topic_id: str | None = None) -> int:
        """Drop a topic's entries, or everything when no topic is given."""
        async with self._lock:
            if topic_id is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                prefix = f"{KEY_PREFIX}:{topic_id}:"
                stale = [key for key in self._entries if key.startswith(prefix)]
                for key in stale:
                    del self._entries[key]
                removed = len(stale)
        if removed:
            logger.debug(f"Invalidated {removed} cached result(s) for topic={topic_id or '*'}")
        return removed

    def stats(self) -> dict[str, int]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}
