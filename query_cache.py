from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, TypeVar

logger = logging.getLogger(__name__)

QueryKey = tuple[Any, ...]
T = TypeVar("T")


def hash_key(key: Iterable[Any]) -> str:
    return json.dumps(list(key), sort_keys=True, default=str, separators=(",", ":"))


def _part_matches(part: Any, pattern: Any) -> bool:
    if isinstance(pattern, Mapping):
        if not isinstance(part, Mapping):
            return False
        return all(
            name in part and _part_matches(part[name], value)
            for name, value in pattern.items()
        )
    return part == pattern


def key_matches(query_key: QueryKey, filter_key: QueryKey) -> bool:
    """True when ``filter_key`` is a prefix of ``query_key``.

    Dict elements match when the filter's dict is a subset of the key's dict,
    so a filter without a date range hits every cached range.
    """
    if len(filter_key) > len(query_key):
        return False
    return all(_part_matches(q, f) for q, f in zip(query_key, filter_key))


@dataclass
class QueryEntry:
    key: QueryKey
    data: Any = None
    error: Optional[BaseException] = None
    generation: int = 0
    fetched_generation: int = -1
    applied_ticket: int = 0
    updated_at: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.fetched_generation >= 0


class QueryCache:
    """Cached query results keyed by ``hash_key``.

    The map keeps at most ``max_entries`` entries; the least recently read
    one is dropped first. An evicted entry is simply fetched again.
    """

    def __init__(
        self,
        stale_time_secs: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 512,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.stale_time_secs = stale_time_secs
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, QueryEntry] = OrderedDict()
        self._tickets = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self) -> None:
        while len(self._entries) > self.max_entries:
            digest, _ = self._entries.popitem(last=False)
            logger.info(f"cache_evict: key={digest}")

    def get(self, key: QueryKey) -> Optional[QueryEntry]:
        digest = hash_key(key)
        with self._lock:
            entry = self._entries.get(digest)
            if entry is not None:
                self._entries.move_to_end(digest)
            return entry

    def is_stale(self, entry: QueryEntry) -> bool:
        if entry.error is not None or entry.generation != entry.fetched_generation:
            return True
        if self.stale_time_secs > 0:
            return self._clock() - entry.updated_at > self.stale_time_secs
        return False

    def fetch(self, key: QueryKey, loader: Callable[[], T]) -> T:
        digest = hash_key(key)
        with self._lock:
            entry = self._entries.get(digest)
            if entry is None:
                entry = QueryEntry(key=tuple(key))
                self._entries[digest] = entry
                self._evict()
            else:
                self._entries.move_to_end(digest)
                if not self.is_stale(entry):
                    return entry.data
            ticket = next(self._tickets)
            started_generation = entry.generation

        try:
            data = loader()
        except Exception as exc:
            with self._lock:
                if ticket >= entry.applied_ticket:
                    entry.error = exc
                    entry.applied_ticket = ticket
            logger.info(f"cache_fetch: key={digest} status=error")
            raise

        with self._lock:
            if ticket < entry.applied_ticket:
                logger.info(f"cache_fetch: key={digest} status=superseded")
                if entry.has_data:
                    return entry.data
                return data
            entry.data = data
            entry.error = None
            entry.fetched_generation = started_generation
            entry.applied_ticket = ticket
            entry.updated_at = self._clock()
        return data

    def entries(self, filter_key: QueryKey) -> list[QueryEntry]:
        with self._lock:
            return [
                entry
                for entry in self._entries.values()
                if key_matches(entry.key, filter_key)
            ]

    def invalidate(self, filter_key: QueryKey) -> int:
        matched = 0
        with self._lock:
            for entry in self._entries.values():
                if key_matches(entry.key, filter_key):
                    entry.generation += 1
                    matched += 1
        logger.info(f"cache_invalidate: key={hash_key(filter_key)} matched={matched}")
        return matched

    def invalidate_many(self, keys: Iterable[QueryKey]) -> int:
        return sum(self.invalidate(key) for key in keys)

    def remove(self, filter_key: QueryKey) -> int:
        with self._lock:
            doomed = [
                digest
                for digest, entry in self._entries.items()
                if key_matches(entry.key, filter_key)
            ]
            for digest in doomed:
                del self._entries[digest]
        return len(doomed)
