"""Thread-safe in-memory cache with per-entry time-to-live.

Design decisions
────────────────
• **OrderedDict** in insertion order, so the oldest entries are evicted
  first once ``max_entries`` is reached.
• **Lazy expiry**: an expired entry is dropped when it is read, and a
  sweep over the whole store runs on a random ~10% of inserts.  No
  background thread is needed.
• **threading.Lock** for thread safety (FastAPI runs the orchestrator in a
  worker-thread pool).  The lock is only held for dict operations, never
  across a network call.
• **Injectable clock and RNG** so tests can move time forward and force or
  suppress the sweep deterministically.
• Values are stored as-is: a hit returns the *identical* object that was
  put, which callers rely on for immutable decisions.

Usage in DecisionEngine
───────────────────────
>>> cache = TTLCache(ttl_seconds=300)
>>> cache.put("bot-1-PRO-True-hola", decision)
>>> cache.get("bot-1-PRO-True-hola") is decision
True
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 5_000
DEFAULT_SWEEP_PROBABILITY = 0.1


class TTLCache:
    """Key/value cache whose entries expire ``ttl_seconds`` after insertion."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        *,
        sweep_probability: float = DEFAULT_SWEEP_PROBABILITY,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._sweep_probability = sweep_probability
        self._clock = clock
        self._rng = rng
        # key → (value, expires_at)
        self._store: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return the cached value or ``None`` if missing or expired."""
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._store[key]
                self._misses += 1
                logger.debug("Cache: expired %s", key)
                return None
            self._hits += 1
            return value

    def put(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        """Insert or overwrite *key*.  Evicts the oldest entries when full."""
        now = self._clock()
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        sweep = self._rng() < self._sweep_probability

        with self._lock:
            if sweep:
                self._sweep_locked(now)

            self._store.pop(key, None)
            while len(self._store) >= self._max_entries and self._store:
                evicted_key, _ = self._store.popitem(last=False)
                logger.debug("Cache: evicted %s (full)", evicted_key)

            self._store[key] = (value, now + ttl)

    def invalidate(self, key: str) -> bool:
        """Remove a single key.  Returns ``True`` if the key existed."""
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> None:
        """Drop all entries and reset the hit/miss counters."""
        with self._lock:
            self._store.clear()
            self._hits = 0
            self._misses = 0

    def sweep(self) -> int:
        """Drop every expired entry now.  Returns count removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    # ── Introspection ────────────────────────────────────────────────

    @property
    def entry_count(self) -> int:
        """Number of entries currently stored (expired ones included until swept)."""
        return len(self._store)

    @property
    def hits(self) -> int:
        return self._hits

    @property
    def misses(self) -> int:
        return self._misses

    def has(self, key: str) -> bool:
        """Check if a live entry exists *without* touching the counters."""
        with self._lock:
            entry = self._store.get(key)
            return entry is not None and entry[1] > self._clock()

    # ── Internal ─────────────────────────────────────────────────────

    def _sweep_locked(self, now: float) -> int:
        expired = [k for k, (_, expires_at) in self._store.items() if expires_at <= now]
        for key in expired:
            del self._store[key]
        if expired:
            logger.debug("Cache: swept %d expired entries", len(expired))
        return len(expired)
