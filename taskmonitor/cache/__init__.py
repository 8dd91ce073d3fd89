"""
Reactive query cache shared by every task view.
"""

from .query_cache import (
    PAUSED,
    CacheEntry,
    QueryCache,
    QueryOptions,
    Subscription,
)

__all__ = ["PAUSED", "CacheEntry", "QueryCache", "QueryOptions", "Subscription"]
