"""Ruleset cache.

Rulesets are resolved against the build context, so entries are keyed on
the user id plus a fingerprint of the full context. Entries expire after
a TTL or when the earliest grant behind them expires, whichever is first.

Callers must invalidate when role, permission or assignment records change:

    cache.invalidate_user(user_id)   # user's roles/direct grants changed
    cache.invalidate_all()           # a role's permissions changed
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections.abc import Mapping
from datetime import datetime, UTC
from typing import Any

from pydantic import BaseModel

from packages.ability.models import Ruleset


class CacheStats(BaseModel):
    """Cache statistics."""

    total_entries: int = 0
    total_hits: int = 0
    total_misses: int = 0
    hit_rate: float = 0.0


class _Entry:
    __slots__ = ("user_id", "ruleset", "expires_at", "last_accessed")

    def __init__(self, user_id: str | None, ruleset: Ruleset, expires_at: float):
        self.user_id = user_id
        self.ruleset = ruleset
        self.expires_at = expires_at
        self.last_accessed = time.monotonic()


class RulesetCache:
    """In-process cache of built rulesets."""

    def __init__(self, ttl_seconds: int = 300, max_entries: int = 10000):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries

        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

        # Stats
        self._hits = 0
        self._misses = 0

    def make_key(self, user_id: str | None, context: Mapping[str, Any] | None) -> str:
        """Generate a cache key from the user and the full context."""
        key_str = json.dumps([user_id, context or {}], sort_keys=True, default=str)
        return hashlib.sha256(key_str.encode()).hexdigest()[:32]

    def get(self, user_id: str | None, context: Mapping[str, Any] | None) -> Ruleset | None:
        key = self.make_key(user_id, context)
        now = time.monotonic()

        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= now:
                if entry is not None:
                    del self._entries[key]
                self._misses += 1
                return None

            entry.last_accessed = now
            self._hits += 1
            return entry.ruleset

    def set(self, user_id: str | None, context: Mapping[str, Any] | None, ruleset: Ruleset) -> None:
        key = self.make_key(user_id, context)
        expires_at = time.monotonic() + self.ttl_seconds

        if ruleset.valid_until is not None:
            remaining = (ruleset.valid_until - datetime.now(UTC)).total_seconds()
            if remaining <= 0:
                return
            expires_at = min(expires_at, time.monotonic() + remaining)

        with self._lock:
            self._evict_if_needed()
            self._entries[key] = _Entry(user_id, ruleset, expires_at)

    def _evict_if_needed(self) -> None:
        """Evict old entries if cache is full. Caller holds the lock."""
        if len(self._entries) < self.max_entries:
            return

        now = time.monotonic()
        expired = [k for k, v in self._entries.items() if v.expires_at <= now]
        for key in expired:
            del self._entries[key]

        # If still full, remove least recently used
        if len(self._entries) >= self.max_entries:
            sorted_entries = sorted(self._entries.items(), key=lambda x: x[1].last_accessed)
            to_remove = len(self._entries) - self.max_entries + 1
            for key, _ in sorted_entries[:to_remove]:
                del self._entries[key]

    def invalidate_user(self, user_id: str) -> int:
        """Drop every cached ruleset for a user. Returns the count dropped."""
        with self._lock:
            keys = [k for k, v in self._entries.items() if v.user_id == user_id]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> CacheStats:
        total = self._hits + self._misses
        return CacheStats(
            total_entries=len(self._entries),
            total_hits=self._hits,
            total_misses=self._misses,
            hit_rate=self._hits / total if total else 0.0,
        )
