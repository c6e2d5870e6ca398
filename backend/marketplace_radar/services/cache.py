import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class TTLCache:
    """In-memory key/value store where entries vanish once their TTL elapses.

    Expiration is lazy: ``get`` evicts an expired entry when it sees one, and
    ``keys``/``size`` sweep before answering.
    """

    def __init__(self, default_ttl: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self.store: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self.store.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(self._clock()):
                self.store.pop(key, None)
                self.misses += 1
                return None
            self.hits += 1
            return entry.data

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self.store[key] = CacheEntry(
                data=value,
                timestamp=self._clock(),
                ttl=self.default_ttl if ttl is None else ttl,
            )

    def delete(self, key: str) -> bool:
        with self._lock:
            return self.store.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self.store.clear()

    def _evict_expired_locked(self) -> int:
        now = self._clock()
        expired = [k for k, entry in self.store.items() if entry.is_expired(now)]
        for key in expired:
            del self.store[key]
        return len(expired)

    def evict_expired(self) -> int:
        with self._lock:
            return self._evict_expired_locked()

    def size(self) -> int:
        with self._lock:
            self._evict_expired_locked()
            return len(self.store)

    def keys(self) -> List[str]:
        with self._lock:
            self._evict_expired_locked()
            return list(self.store.keys())

    def stats(self) -> Dict[str, Any]:
        keys = self.keys()
        return {"size": len(keys), "keys": keys, "hits": self.hits, "misses": self.misses}
