"""
In-memory embedding cache.

Keys are SHA-256 digests of the exact text, so memory use per entry does not
depend on text length. Optional LRU bound for very large corpora.

Thread-safe, and computes each distinct text at most once: a second caller
asking for a text that is being embedded right now waits for that result
instead of starting its own forward pass.
"""
import hashlib
import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future

import numpy as np

from embedpipe.metrics import cache_hits, cache_misses

logger = logging.getLogger(__name__)


def cache_key(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8', 'surrogatepass')).hexdigest()


class EmbeddingCache:
    def __init__(self, max_entries: int | None = None):
        if max_entries is not None and max_entries < 0:
            raise ValueError(f"max_entries must be >= 0, got {max_entries}")
        # 0 / None: unbounded
        self.max_entries = max_entries or None
        self.hits = 0
        self.misses = 0
        self._entries: OrderedDict[str, np.ndarray] = OrderedDict()
        self._inflight: dict[str, Future] = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, text: str) -> bool:
        with self._lock:
            return cache_key(text) in self._entries

    def get(self, text: str) -> np.ndarray | None:
        key = cache_key(text)
        with self._lock:
            vector = self._entries.get(key)
            if vector is not None:
                self._entries.move_to_end(key)
            return vector

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def _store(self, key: str, vector: np.ndarray) -> None:
        self._entries[key] = vector
        self._entries.move_to_end(key)
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted cache entry {evicted[:12]}")

    def get_or_compute(self, text: str, embedder) -> np.ndarray:
        """
        Cached vector for `text`, computing it with embedder.embed_text() on a miss.

        Errors are not cached: they propagate to the caller that computed and
        to anyone who was waiting on that computation.
        """
        key = cache_key(text)
        with self._lock:
            vector = self._entries.get(key)
            if vector is not None:
                self._entries.move_to_end(key)
                self.hits += 1
                cache_hits.inc()
                return vector

            pending = self._inflight.get(key)
            owner = pending is None
            if owner:
                pending = Future()
                self._inflight[key] = pending
                self.misses += 1
                cache_misses.inc()
            else:
                self.hits += 1
                cache_hits.inc()

        if not owner:
            return pending.result()

        try:
            vector = embedder.embed_text(text)
        except BaseException as e:
            with self._lock:
                del self._inflight[key]
            pending.set_exception(e)
            raise

        with self._lock:
            self._store(key, vector)
            del self._inflight[key]
        pending.set_result(vector)
        return vector
