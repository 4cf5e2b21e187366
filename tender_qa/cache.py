"""
cache.py - Short-lived answer cache.

Bidders ask the same question many times around a deadline. The pipeline
caches the expensive, classification-independent part of an answer
(candidates, context, generation, similarity, rule checks) per
(tender_id, normalised question text) for a few minutes. The escalation
decision is always recomputed from the cached inputs plus the new
question's classification.

Entries are owned by one pipeline instance, bounded by TTL and size, and
dropped for a whole tender whenever one of its documents changes active
version.
"""

from __future__ import annotations

import re
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple

from tender_qa.config import CacheConfig, config

CacheKey = Tuple[str, str]

_PUNCT_RE = re.compile(r"[^\w\s-]")
_SPACE_RE = re.compile(r"\s+")


def normalize_question(text: str) -> str:
    """Lower-case, drop punctuation, collapse whitespace."""
    return _SPACE_RE.sub(" ", _PUNCT_RE.sub(" ", text.lower())).strip()


class AnswerCache:
    def __init__(
        self,
        cache_config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = cache_config or config.cache
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @staticmethod
    def key(tender_id: str, question_text: str) -> CacheKey:
        return (tender_id, normalize_question(question_text))

    def get(self, key: CacheKey) -> Optional[Any]:
        if not self._config.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def put(self, key: CacheKey, value: Any) -> None:
        if not self._config.enabled:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self._config.ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._config.max_entries:
                self._entries.popitem(last=False)

    def invalidate_tender(self, tender_id: str) -> int:
        """Drop every entry of the tender. Returns how many were dropped."""
        with self._lock:
            stale = [k for k in self._entries if k[0] == tender_id]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
