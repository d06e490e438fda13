"""
Key-value cache stores and the per-entry translation memory.

The pipeline only relies on get/set/delete with a TTL plus a few atomic
helpers (set-if-absent, counters, read-modify-write). ``DiskCacheStore``
is backed by diskcache and is safe to share between processes;
``MemoryCacheStore`` serves single-process use and tests.
"""

import copy
import hashlib
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, Any, Callable, List, Tuple

import diskcache

from subtrans.core.exceptions import CacheError
from subtrans.utils.logger import get_logger

logger = get_logger(__name__)


class CacheStore(ABC):
    """Abstract key-value store with TTL support."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the value for ``key`` or None if absent or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value``; ``ttl`` in seconds, None for no expiry."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; returns True if it existed."""

    @abstractmethod
    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value`` only if ``key`` is absent. Returns True if stored."""

    @abstractmethod
    def incr(self, key: str, delta: int = 1, ttl: Optional[float] = None) -> int:
        """Atomically add ``delta`` to an integer counter (missing counts as 0)."""

    @abstractmethod
    def update(
        self,
        key: str,
        fn: Callable[[Optional[Any]], Any],
        ttl: Optional[float] = None
    ) -> Any:
        """Atomically replace the value with ``fn(current)`` and return it."""

    @abstractmethod
    def touch(self, key: str, ttl: Optional[float]) -> bool:
        """Reset the expiry of an existing key."""

    def close(self) -> None:
        pass


class DiskCacheStore(CacheStore):
    """Process-safe store on top of ``diskcache.Cache``."""

    def __init__(self, cache_dir: str = ".cache/subtrans"):
        self.cache_dir = Path(cache_dir)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._cache = diskcache.Cache(str(self.cache_dir))
        except Exception as e:
            raise CacheError(
                f"Failed to initialize disk cache at {self.cache_dir}: {e}",
                cache_type="disk",
                operation="init"
            ) from e
        logger.debug(f"Using disk cache at {self.cache_dir}")

    def get(self, key: str) -> Optional[Any]:
        return self._cache.get(key)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._cache.set(key, value, expire=ttl)

    def delete(self, key: str) -> bool:
        return bool(self._cache.delete(key))

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return bool(self._cache.add(key, value, expire=ttl))

    def incr(self, key: str, delta: int = 1, ttl: Optional[float] = None) -> int:
        with self._cache.transact():
            value = self._cache.incr(key, delta, default=0)
            if ttl is not None:
                self._cache.touch(key, expire=ttl)
        return value

    def update(self, key, fn, ttl=None):
        with self._cache.transact():
            value = fn(self._cache.get(key))
            self._cache.set(key, value, expire=ttl)
        return value

    def touch(self, key: str, ttl: Optional[float]) -> bool:
        return bool(self._cache.touch(key, expire=ttl))

    def close(self) -> None:
        self._cache.close()

    def get_stats(self) -> Dict[str, Any]:
        return {"type": "disk", "size": len(self._cache), "location": str(self.cache_dir)}


class MemoryCacheStore(CacheStore):
    """In-process store; values are copied so callers never share mutable state with it."""

    def __init__(self):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and time.time() >= expires_at:
            del self._data[key]
            return None
        return entry

    @staticmethod
    def _expiry(ttl: Optional[float]) -> Optional[float]:
        return time.time() + ttl if ttl is not None else None

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            return copy.deepcopy(entry[0]) if entry else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl))

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._live(key) is not None
            self._data.pop(key, None)
            return existed

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl))
            return True

    def incr(self, key: str, delta: int = 1, ttl: Optional[float] = None) -> int:
        with self._lock:
            entry = self._live(key)
            current, expires_at = entry if entry else (0, None)
            value = int(current) + delta
            if ttl is not None:
                expires_at = self._expiry(ttl)
            self._data[key] = (value, expires_at)
            return value

    def update(self, key, fn, ttl=None):
        with self._lock:
            entry = self._live(key)
            value = fn(copy.deepcopy(entry[0]) if entry else None)
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl))
            return value

    def touch(self, key: str, ttl: Optional[float]) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._expiry(ttl))
            return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"type": "memory", "size": len(self._data)}


class TranslationMemory:
    """
    Entry-level cache of translated subtitle lines.

    Keyed by the normalized source text and target language so identical
    lines across files and jobs are translated once.
    """

    def __init__(self, store: CacheStore, ttl: Optional[float] = 30 * 24 * 3600):
        self.store = store
        self.ttl = ttl
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _make_key(text: str, target_lang: str) -> str:
        normalized = text.strip().lower()
        digest = hashlib.md5(f"{normalized}:{target_lang}".encode("utf-8")).hexdigest()
        return f"tm:{digest}"

    def lookup(self, entries: List[Any], target_lang: str) -> Dict[int, str]:
        """Return translations already known for ``entries``, keyed by entry index."""
        found: Dict[int, str] = {}
        for entry in entries:
            try:
                cached = self.store.get(self._make_key(entry.text, target_lang))
            except Exception as e:
                logger.warning(f"Translation memory lookup failed: {e}. Continuing without cache.")
                return found
            if cached:
                found[entry.index] = cached
                self._hits += 1
            else:
                self._misses += 1
        return found

    def remember(self, text: str, target_lang: str, translation: str) -> None:
        try:
            self.store.set(self._make_key(text, target_lang), translation, ttl=self.ttl)
        except Exception as e:
            logger.warning(f"Translation memory write failed: {e}. Continuing without cache.")

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        hit_rate = self._hits / total if total > 0 else 0
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": f"{hit_rate:.1%}"
        }
