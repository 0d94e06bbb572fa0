"""
Project Statistics Cache

Thread-safe TTL + LRU cache for the derived views that are expensive to
rebuild on every request (extended dashboard stats, epic/story hierarchy).

Entries are keyed per project and carry the signature of the files they were
computed from. A lookup with a different signature is a miss, so an entry is
never served after its task file or context files changed, even if nobody
invalidated it.
"""

import os
import time
import threading
from typing import Optional, Dict, Any, Hashable, Tuple
from dataclasses import dataclass
from collections import OrderedDict
import logging

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 256
DEFAULT_TTL = 300


@dataclass
class CacheEntry:
    """Cached view with its expiry time and source signature."""

    value: Any
    expires_at: float
    signature: Hashable = None


class StatsCache:
    """
    Thread-safe LRU cache with TTL for per-project statistics.

    Keys are (kind, project_id) pairs, so every entry for a project can be
    dropped at once with invalidate_project().
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE, default_ttl: int = DEFAULT_TTL):
        """
        Args:
            max_size: Maximum number of cache entries (LRU eviction)
            default_ttl: Default TTL in seconds
        """
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._entries: "OrderedDict[Tuple[str, str], CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()

        self._hits = 0
        self._misses = 0
        self._stale = 0
        self._evictions = 0
        self._invalidations = 0

    def get(self, kind: str, project_id: str, signature: Hashable = None) -> Optional[Any]:
        """
        Look up a cached view.

        Args:
            kind: View name, e.g. "hierarchy"
            project_id: Registry id of the project
            signature: Signature of the view's source files; an entry stored
                under another signature is discarded

        Returns:
            The cached value, or None on a miss
        """
        key = (kind, project_id)

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if time.time() > entry.expires_at:
                del self._entries[key]
                self._misses += 1
                logger.debug(f"Cached {kind} for {project_id} expired")
                return None

            if entry.signature != signature:
                del self._entries[key]
                self._misses += 1
                self._stale += 1
                logger.debug(f"Cached {kind} for {project_id} is stale, source files changed")
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(
        self,
        kind: str,
        project_id: str,
        value: Any,
        signature: Hashable = None,
        ttl: Optional[int] = None,
    ) -> None:
        entry = CacheEntry(
            value=value,
            expires_at=time.time() + (ttl or self.default_ttl),
            signature=signature,
        )

        with self._lock:
            self._entries[(kind, project_id)] = entry
            self._entries.move_to_end((kind, project_id))
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Evicted cached {evicted[0]} for {evicted[1]}")

    def invalidate_project(self, project_id: str) -> int:
        """
        Drop every cached view of a project.

        Returns:
            Number of entries dropped
        """
        with self._lock:
            keys = [key for key in self._entries if key[1] == project_id]
            for key in keys:
                del self._entries[key]
            self._invalidations += len(keys)

        if keys:
            logger.debug(f"Invalidated {len(keys)} cached views for project {project_id}")
        return len(keys)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._invalidations += count

        logger.info(f"Cleared all {count} cached views")
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Counters plus the number of live entries per project."""
        with self._lock:
            requests = self._hits + self._misses
            projects: Dict[str, int] = {}
            for _, project_id in self._entries:
                projects[project_id] = projects.get(project_id, 0) + 1

            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl": self.default_ttl,
                "hits": self._hits,
                "misses": self._misses,
                "stale": self._stale,
                "hit_rate": (self._hits / requests) if requests else 0.0,
                "evictions": self._evictions,
                "invalidations": self._invalidations,
                "projects": projects,
            }


# Global cache instance for the application
_stats_cache: Optional[StatsCache] = None


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Ignoring invalid {name}, using {default}")
        return default


def get_stats_cache() -> StatsCache:
    """Get or create the global stats cache instance.

    Respects environment variables for configuration:
    - SHRIMP_VIEWER_CACHE_SIZE (int, default 256)
    - SHRIMP_VIEWER_CACHE_TTL (int, default 300)
    """
    global _stats_cache

    if _stats_cache is None:
        max_size = _env_int("SHRIMP_VIEWER_CACHE_SIZE", DEFAULT_MAX_SIZE)
        ttl = _env_int("SHRIMP_VIEWER_CACHE_TTL", DEFAULT_TTL)
        _stats_cache = StatsCache(max_size=max_size, default_ttl=ttl)
        logger.info(f"Initialized stats cache (max_size={max_size}, ttl={ttl}s)")

    return _stats_cache


def reset_stats_cache() -> None:
    """Reset the global stats cache (primarily for testing)."""
    global _stats_cache
    _stats_cache = None
