"""
Pipeline Pulse — TTL Cache
===========================
In-process key/value cache with per-entry expiry. Backs the API response
cache, cached attribution stats and the dashboard payload cache.

Usage:
    from scripts.lib.cache import cache_service

    cache_service.set("attribution-stats", stats, ttl=1800)
    stats = cache_service.get("attribution-stats")
    cache_service.clear(prefix="enhanced-dashboard:")
"""
from __future__ import annotations

import os
import threading
import time
from functools import wraps
from typing import Any, Callable, Dict, Optional

from scripts.lib.logger import setup_logger

logger = setup_logger("cache")

DEFAULT_TTL = int(os.getenv("CACHE_TTL_SECONDS", "900"))
MAX_KEYS = int(os.getenv("CACHE_MAX_KEYS", "1000"))

_MISSING = object()


class TTLCacheService:
    """Dict-backed cache; entries are stamped with `_expires_at`."""

    def __init__(self, default_ttl: int = DEFAULT_TTL, max_keys: int = MAX_KEYS):
        self.default_ttl = default_ttl
        self.max_keys = max_keys
        self._store: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return default
            if entry["_expires_at"] <= time.time():
                del self._store[key]
                self.misses += 1
                return default
            self.hits += 1
            return entry["value"]

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            if key not in self._store and len(self._store) >= self.max_keys:
                self._evict()
            self._store[key] = {
                "value": value,
                "_cached_at": time.time(),
                "_expires_at": time.time() + ttl,
            }

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self, prefix: Optional[str] = None) -> int:
        """Remove all keys, or only those starting with prefix. Returns count removed."""
        with self._lock:
            if prefix is None:
                removed = len(self._store)
                self._store.clear()
            else:
                keys = [k for k in self._store if k.startswith(prefix)]
                for k in keys:
                    del self._store[k]
                removed = len(keys)
        logger.info("Cache cleared: %d keys (prefix=%s)", removed, prefix or "*")
        return removed

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            now = time.time()
            live = sum(1 for e in self._store.values() if e["_expires_at"] > now)
            lookups = self.hits + self.misses
            return {
                "keys": live,
                "max_keys": self.max_keys,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / lookups * 100, 1) if lookups else 0.0,
                "default_ttl": self.default_ttl,
            }

    def _evict(self) -> None:
        # Drop expired entries first, then the oldest one if still full
        now = time.time()
        for k in [k for k, e in self._store.items() if e["_expires_at"] <= now]:
            del self._store[k]
        if len(self._store) >= self.max_keys:
            oldest = min(self._store, key=lambda k: self._store[k]["_cached_at"])
            del self._store[oldest]


cache_service = TTLCacheService()


def cached(ttl: Optional[int] = None, key_prefix: str = "") -> Callable:
    """
    Decorator caching a function's return value by its arguments.

    Usage:
        @cached(ttl=300, key_prefix="users:")
        def load_users(): ...
    """
    def decorator(func: Callable) -> Callable:
        prefix = key_prefix or f"{func.__module__}.{func.__name__}:"

        @wraps(func)
        def wrapper(*args, **kwargs):
            key = prefix + repr((args, sorted(kwargs.items())))
            value = cache_service.get(key, _MISSING)
            if value is not _MISSING:
                return value
            value = func(*args, **kwargs)
            cache_service.set(key, value, ttl=ttl)
            return value

        wrapper.cache_prefix = prefix
        return wrapper
    return decorator


# Cached reads derived from synced rows; dropped whenever a sync or repair writes
DATA_CACHE_PREFIXES = ("response:", "enhanced-dashboard:", "revenue:", "attribution-stats")


def invalidate_data_caches(cache: Optional[TTLCacheService] = None) -> int:
    """Clear every cached read that a sync or repair may have made stale."""
    cache = cache or cache_service
    removed = sum(cache.clear(prefix=prefix) for prefix in DATA_CACHE_PREFIXES)
    logger.info("Invalidated %d cached entries after a data change", removed)
    return removed
