"""
Episode caching with freshness policy, request coalescing, diff reconciliation
and stale-while-error.
"""
from .core import CacheEntry, CacheResult, CacheSource, CacheState, CacheStats, Changeset, Freshness
from .freshness import DEFAULT_MIN_TTL_SECONDS, DEFAULT_MAX_AGE_SECONDS, classify, is_expired
from .reconciler import diff, merge
from .storage import CacheStorage
from .coalescer import RequestCoalescer
from .manager import CacheManager
from .migration import LegacyMigrator

__all__ = [
    # Core types
    "CacheEntry",
    "CacheResult",
    "CacheSource",
    "CacheState",
    "CacheStats",
    "Changeset",
    "Freshness",
    # Freshness policy
    "DEFAULT_MIN_TTL_SECONDS",
    "DEFAULT_MAX_AGE_SECONDS",
    "classify",
    "is_expired",
    # Reconciliation
    "diff",
    "merge",
    # Persistence
    "CacheStorage",
    "LegacyMigrator",
    # Coalescing
    "RequestCoalescer",
    # Manager
    "CacheManager",
]
