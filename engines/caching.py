"""Query embedding cache used by the retrieval engine."""

import hashlib
from typing import Dict, List, Optional
from threading import Lock


class EmbeddingCache:
    """Thread-safe LRU cache for embeddings with size limit."""

    def __init__(self, max_size: int = 1024):
        self._cache: Dict[str, List[float]] = {}
        self._access_order: List[str] = []
        self._max_size = max(1, int(max_size))
        self._lock = Lock()

    def add(self, text: str, embedding: List[float], *, namespace: str = "") -> None:
        """Add an embedding to the cache with LRU eviction."""
        key = self._make_key(text, namespace)
        with self._lock:
            if key in self._cache:
                self._access_order.remove(key)
            elif len(self._cache) >= self._max_size:
                # Evict least recently used
                lru_key = self._access_order.pop(0)
                self._cache.pop(lru_key, None)

            self._cache[key] = list(embedding)
            self._access_order.append(key)

    def get(self, text: str, *, namespace: str = "") -> Optional[List[float]]:
        """Retrieve an embedding from the cache, updating access order."""
        key = self._make_key(text, namespace)
        with self._lock:
            embedding = self._cache.get(key)
            if embedding is not None:
                # Move to most recently used
                self._access_order.remove(key)
                self._access_order.append(key)
            return embedding

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._access_order.clear()

    def __len__(self) -> int:
        return len(self._cache)

    @staticmethod
    def _make_key(text: str, namespace: str = "") -> str:
        # namespace separates vectors produced by different embedding models
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{namespace}:{digest}"
