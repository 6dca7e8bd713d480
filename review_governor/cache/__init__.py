"""Two-tier result cache.

Public API:
    MemoryCache    - In-process TTL map (first tier)
    TieredCache    - Memory + durable facade with promotion and degradation
    WriteOutcome   - Which tiers a write reached
    AnalysisCache  - Typed helpers for review analytics results and imports
    CacheJanitor   - Background expiry sweep and durable age cleanup
    cached         - Decorator memoizing an async function through a TieredCache
"""

from review_governor.cache.analysis import AnalysisCache
from review_governor.cache.decorator import cached
from review_governor.cache.janitor import CacheJanitor
from review_governor.cache.memory import MemoryCache
from review_governor.cache.tiered import TierStatus, TieredCache, WriteOutcome

__all__ = [
    "AnalysisCache",
    "CacheJanitor",
    "MemoryCache",
    "TierStatus",
    "TieredCache",
    "WriteOutcome",
    "cached",
]
