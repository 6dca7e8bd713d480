"""Durable cache tier.

Public API:
    DurableStore             - Async store for review sets, metadata and analyses
    DurableStoreError        - Any failed durable operation
    DurableUnavailableError  - The store could not be initialised
    StoredReviews            - Review set read back from the store
    CleanupResult            - Outcome of an age-based cleanup
    StorageInfo              - Best-effort disk usage estimate
"""

from review_governor.storage.durable import (
    CleanupResult,
    DurableStore,
    DurableStoreError,
    DurableUnavailableError,
    StorageInfo,
    StoredReviews,
)

__all__ = [
    "CleanupResult",
    "DurableStore",
    "DurableStoreError",
    "DurableUnavailableError",
    "StorageInfo",
    "StoredReviews",
]
