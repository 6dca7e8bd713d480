"""Cache key builders.

Every call site gets an explicit builder so fingerprint choices are visible
in review instead of being implied by whatever arguments happen to be
serialised.

Generic rule::

    key = logical_name + "_" + json(argument_list)

The logical name namespaces the key, so two different operations never
collide even when called with identical arguments. JSON serialisation uses
sorted keys and compact separators so the same arguments always produce the
same key.

Review-set helpers key on a cheap fingerprint, ``(review_count,
first_review_content)``, instead of the whole payload. Two different sets of
the same size that start with the same review share a key; callers that
cannot accept that pass a precomputed key instead.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

REVIEW_ANALYSIS = "review_analysis"
SENTIMENT_ANALYSIS = "sentiment_analysis"
INSIGHTS = "insights"
CATEGORIZE = "categorize"

DEFAULT_TERRITORY = "USA"


def _serialise(args: Sequence[Any]) -> str:
    return json.dumps(
        list(args),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def build_key(logical_name: str, *args: Any) -> str:
    """Build a deterministic key for ``logical_name`` called with ``args``."""
    if not logical_name:
        raise ValueError("logical_name must be a non-empty string")
    return f"{logical_name}_{_serialise(args)}"


def review_set_fingerprint(reviews: Sequence[Mapping[str, Any]]) -> tuple[int, Any]:
    """Return ``(count, first review content)`` for a review collection."""
    if not reviews:
        return 0, None
    return len(reviews), reviews[0].get("content")


def review_analysis_key(reviews: Sequence[Mapping[str, Any]]) -> str:
    return build_key(REVIEW_ANALYSIS, *review_set_fingerprint(reviews))


def sentiment_analysis_key(
    reviews: Sequence[Mapping[str, Any]] | None = None,
    *,
    key: str | None = None,
) -> str:
    """Key for a sentiment summary. A precomputed ``key`` wins."""
    if key:
        return key
    if reviews is None:
        raise ValueError("Either reviews or key is required")
    return build_key(SENTIMENT_ANALYSIS, *review_set_fingerprint(reviews))


def insights_key(summary: Any) -> str:
    return build_key(INSIGHTS, summary)


def categorization_key(content: str) -> str:
    return build_key(CATEGORIZE, content)


def review_import_key(
    app_id: str,
    territory: str = DEFAULT_TERRITORY,
    last_sync: str | None = None,
) -> str:
    """Key for a bulk review import, e.g. ``reviews:1234:USA``."""
    key = f"reviews:{app_id}:{territory}"
    if last_sync:
        key = f"{key}:{last_sync}"
    return key


def app_metadata_key(app_id: str) -> str:
    return f"meta:{app_id}"
