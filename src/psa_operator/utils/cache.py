"""TTL cache for long-lived target cluster clients."""

from __future__ import annotations

import os
import time
from typing import Any, Optional

# Cache with TTL support
_cache: dict[str, tuple[Any, float]] = {}
_cache_ttl: float = float(os.getenv("K8S_CACHE_TTL_SECONDS", "300.0"))


def get_cached_object(key: str) -> Optional[Any]:
    """Get an object from cache if it hasn't expired.

    Args:
        key: Cache key (see make_cache_key)

    Returns:
        Cached object or None if not found or expired
    """
    entry = _cache.get(key)
    if entry is None:
        return None

    obj, timestamp = entry
    if time.time() - timestamp > _cache_ttl:
        _cache.pop(key, None)
        return None

    return obj


def set_cached_object(key: str, obj: Any) -> None:
    """Store an object in cache with current timestamp, dropping expired entries."""
    now = time.time()
    for stale in [k for k, (_, timestamp) in _cache.items() if now - timestamp > _cache_ttl]:
        _cache.pop(stale, None)
    _cache[key] = (obj, now)



def invalidate_cache(pattern: Optional[str] = None) -> None:
    """Invalidate cache entries.

    Args:
        pattern: Optional substring of keys to drop (if None, clears all)
    """
    if pattern is None:
        _cache.clear()
    else:
        for key in [key for key in list(_cache) if pattern in key]:
            _cache.pop(key, None)


def make_cache_key(kind: str, namespace: str, name: str, *parts: str) -> str:
    """Create a cache key for a Kubernetes resource.

    Args:
        kind: Resource kind (e.g., "VSphereCluster")
        namespace: Resource namespace
        name: Resource name
        *parts: Extra discriminators such as a UID

    Returns:
        Cache key string
    """
    return ":".join([kind, namespace, name, *parts])
