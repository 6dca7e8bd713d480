"""Memoize an async function through the tiered cache."""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from review_governor.cache.keys import build_key
from review_governor.cache.tiered import TieredCache

log = structlog.get_logger(__name__)

R = TypeVar("R")


def cached(
    cache: TieredCache,
    ttl: float | None = None,
    key_prefix: str | None = None,
) -> Callable[[Callable[..., Awaitable[R]]], Callable[..., Awaitable[R]]]:
    """Cache the results of an async function.

    The key is ``build_key(key_prefix or func.__name__, *args)``. Calls with
    keyword arguments use ``build_key(prefix + ":kw", list(args), kwargs)``,
    so keyword order does not matter and ``f(1, {"x": 1})`` never shares a
    key with ``f(1, x=1)``. Exceptions propagate and are never cached; a ``None`` result is
    indistinguishable from a miss and is therefore recomputed every time.

    Usage::

        @cached(cache, ttl=1800, key_prefix="review_analysis")
        async def analyse(count: int, first: str) -> dict: ...
    """

    def decorator(func: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        prefix = key_prefix or func.__name__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> R:
            if kwargs:
                key = build_key(f"{prefix}:kw", list(args), kwargs)
            else:
                key = build_key(prefix, *args)
            hit = await cache.get(key)
            if hit is not None:
                return hit

            result = await func(*args, **kwargs)
            if result is not None:
                await cache.set(key, result, ttl)
            else:
                log.debug("cache.decorator.none_not_cached", key=key)
            return result

        return wrapper

    return decorator
