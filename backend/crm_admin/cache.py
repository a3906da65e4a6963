"""
In-process query cache.

Entries live for `ttl` seconds and the cache holds at most `max_entries`;
when full, the oldest *inserted* entry is evicted (FIFO, not LRU).
Expired entries are dropped lazily when they are looked up.
"""

from __future__ import annotations

import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable

ALL = "all"

_MISSING = object()


@dataclass(frozen=True)
class CacheKey:
    collection: str
    doc_id: str
    signature: str

    def __str__(self) -> str:
        return f"{self.collection}_{self.doc_id}_{self.signature}"


@dataclass
class CacheEntry:
    data: Any
    timestamp: float


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def make_key(collection: str, doc_id: str | None = None, signature: Any = None) -> CacheKey:
    if not isinstance(signature, str):
        signature = canonical_json(signature or {})
    return CacheKey(collection, doc_id or ALL, signature)


class QueryCache:
    def __init__(
        self,
        ttl: float = 300.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return default
            if self._clock() - entry.timestamp >= self.ttl:
                del self._entries[key]
                self.misses += 1
                return default
            self.hits += 1
            return entry.data

    def lookup(self, key: Hashable) -> tuple[bool, Any]:
        """Return `(hit, data)` so cached `None` results still count as hits."""
        data = self.get(key, _MISSING)
        if data is _MISSING:
            return False, None
        return True, data

    def cache_result(self, key: Hashable, data: Any) -> None:
        with self._lock:
            if key in self._entries:
                # keeps its original insertion slot
                self._entries[key] = CacheEntry(data, self._clock())
                return
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = CacheEntry(data, self._clock())

    def invalidate(self, collection: str, doc_id: str | None = None) -> int:
        """Drop entries for `collection`.

        With `doc_id`, cached reads of *other* single documents survive;
        the document's own entries and every collection-wide result
        (lists, aggregates) are dropped.
        """
        with self._lock:
            doomed = []
            for key in self._entries:
                if not isinstance(key, CacheKey) or key.collection != collection:
                    continue
                if doc_id is None or key.doc_id == doc_id or not _is_single_doc(key):
                    doomed.append(key)
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }


def _is_single_doc(key: CacheKey) -> bool:
    return key.doc_id != ALL and not key.doc_id.startswith("aggregate:")
