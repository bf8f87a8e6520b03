"""Commit-then-invalidate consistency for cached read models."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Mapping

from cachetools import TTLCache
from sqlalchemy import event
from sqlalchemy.orm import Session

from app.config import get_settings
from app.services.view_keys import MUTATION_KINDS, ViewKey, keys_for

logger = logging.getLogger(__name__)

PENDING_KEY = "pending_invalidations"


@dataclass(frozen=True)
class InvalidationEvent:
    kind: str
    context: Mapping[str, Any] = field(default_factory=dict)


class ViewCache:
    """Thread-safe TTL cache of read models keyed by view-key tuples.

    ``generation`` advances on every eviction. A reader that loads a view from
    the database stores it with :meth:`set_if_current`, which refuses the write
    when an eviction ran while the view was being loaded.
    """

    def __init__(self, *, maxsize: int, ttl: float) -> None:
        self._data: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: ViewKey) -> Any:
        with self._lock:
            return self._data.get(key)

    def set(self, key: ViewKey, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def set_if_current(self, key: ViewKey, value: Any, generation: int) -> bool:
        with self._lock:
            if self._generation != generation:
                return False
            self._data[key] = value
            return True

    def delete(self, key: ViewKey) -> None:
        with self._lock:
            self._generation += 1
            self._data.pop(key, None)

    def evict_prefixes(self, prefixes: frozenset[ViewKey]) -> int:
        """Drop every entry whose key starts with one of ``prefixes``, as one batch."""

        with self._lock:
            self._generation += 1
            stale = [
                key
                for key in list(self._data.keys())
                if any(key[: len(prefix)] == prefix for prefix in prefixes)
            ]
            for key in stale:
                self._data.pop(key, None)
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._data.clear()


class ConsistencyInvalidator:
    """Maps mutation kinds to stale views and evicts them.

    Failures of the cache backend are logged and swallowed; a missed eviction
    only delays freshness until the entry's TTL runs out.
    """

    def __init__(self, cache: ViewCache) -> None:
        self.cache = cache

    def invalidate_after(self, kind: str, context: Mapping[str, Any] | None = None) -> frozenset[ViewKey]:
        keys = keys_for(kind, context)
        try:
            evicted = self.cache.evict_prefixes(keys)
        except Exception:
            logger.exception("View invalidation failed", extra={"kind": kind})
            return frozenset()
        logger.info(
            "Views invalidated",
            extra={"kind": kind, "context": dict(context or {}), "keys": len(keys), "evicted": evicted},
        )
        return keys

    def apply_optimistic(self, key: ViewKey, updater: Callable[[Any], Any]) -> Any:
        """Write ``updater(current)`` to ``key`` and return the previous value.

        ``None`` from the updater leaves the entry untouched. The caller passes
        the returned value to :meth:`rollback` if its mutation fails.
        """

        previous = self.cache.get(key)
        updated = updater(previous)
        if updated is not None:
            self.cache.set(key, updated)
        return previous

    def rollback(self, key: ViewKey, previous: Any) -> None:
        if previous is None:
            self.cache.delete(key)
        else:
            self.cache.set(key, previous)


@lru_cache
def get_invalidator() -> ConsistencyInvalidator:
    settings = get_settings()
    return ConsistencyInvalidator(
        ViewCache(maxsize=settings.VIEW_CACHE_MAXSIZE, ttl=settings.VIEW_CACHE_TTL_SECONDS)
    )


def invalidate_on_commit(session: Session, kind: str, context: Mapping[str, Any] | None = None) -> None:
    """Queue an invalidation that runs only once ``session`` commits."""

    if kind not in MUTATION_KINDS:
        raise ValueError(f"Unknown mutation kind: {kind!r}")
    session.info.setdefault(PENDING_KEY, []).append(InvalidationEvent(kind, dict(context or {})))


@event.listens_for(Session, "after_commit")
def _run_pending_invalidations(session: Session) -> None:
    pending = session.info.pop(PENDING_KEY, None)
    if not pending:
        return
    invalidator = get_invalidator()
    for item in pending:
        invalidator.invalidate_after(item.kind, item.context)


@event.listens_for(Session, "after_rollback")
def _drop_pending_invalidations(session: Session) -> None:
    session.info.pop(PENDING_KEY, None)


__all__ = [
    "ConsistencyInvalidator",
    "InvalidationEvent",
    "ViewCache",
    "get_invalidator",
    "invalidate_on_commit",
]
