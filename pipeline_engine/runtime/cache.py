"""
Result Cache - Content-addressed storage of node outputs.

The key of a task is a SHA-256 digest over the canonical JSON encoding of
its node type, config, resolved inputs and executor cache version. A second
task with the same key skips its executor and reuses the stored outputs.

The cache is shared across runs; writes for one key are idempotent.
"""

import copy
import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class UncacheableError(ValueError):
    """Inputs or config cannot be encoded canonically."""

    pass


def _canonical(value: Any) -> Any:
    """Reduce a value to JSON types with a stable ordering."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise UncacheableError(f"Non-finite float {value!r} has no canonical encoding")
        return value
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise UncacheableError(f"Mapping key {k!r} is not a string")
            out[k] = _canonical(v)
        return out
    if hasattr(value, "model_dump"):
        return _canonical(value.model_dump(mode="json"))
    raise UncacheableError(f"Cannot encode {type(value).__name__} for caching")


def compute_cache_key(
    node_type: str,
    config: dict[str, Any],
    inputs: dict[str, Any],
    version: str = "",
) -> str:
    """
    Deterministic cache key for one task.

    Raises:
        UncacheableError: if config or inputs hold values without a
            canonical JSON form (bytes, sets, arbitrary objects, NaN)
    """
    payload = {
        "node_type": node_type,
        "config": _canonical(config),
        "inputs": _canonical(inputs),
        "version": version,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class ResultCache(ABC):
    """Storage interface for cached node outputs."""

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the stored outputs for `key`, or None."""

    @abstractmethod
    async def put(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        """Store outputs under `key`; `ttl` seconds overrides the default."""

    async def invalidate(self, key: str) -> bool:
        return False

    async def clear(self) -> None:
        return None

    def stats(self) -> dict[str, Any]:
        return {}


class InMemoryResultCache(ResultCache):
    """
    Thread-safe LRU cache with optional TTL.

    Values are deep-copied on the way in and out so callers can never mutate
    a stored result.
    """

    def __init__(
        self,
        default_ttl: float | None = None,
        max_entries: int | None = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[dict[str, Any], float | None]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    async def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return copy.deepcopy(value)

    async def put(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        stored = copy.deepcopy(value)
        with self._lock:
            self._entries[key] = (stored, expires_at)
            self._entries.move_to_end(key)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    self._evictions += 1
                    logger.debug(f"Evicted cache entry {evicted[:12]}")

    async def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": len(self._entries),
                "evictions": self._evictions,
                "hit_rate": self._hits / lookups if lookups else 0.0,
            }
