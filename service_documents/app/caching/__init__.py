"""
Document Gateway caching package.

Holds the in-process response cache shared by every request. Keys are
namespaced by "<database>/<collection>" so writes can evict by prefix.
"""

from .cache_manager import CacheManager, CacheEntry, StaleRead

__all__ = ["CacheManager", "CacheEntry", "StaleRead"]
