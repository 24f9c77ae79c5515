"""Bounded-staleness cache for resolved benefit lists and affiliation lookups."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Awaitable, Callable, Hashable, Iterable

from loguru import logger

from fidelya_api.core.settings import settings
from fidelya_api.observability.benefits import BenefitObservabilityStore, get_benefit_store

CacheKey = tuple[str, Hashable, Hashable]
Clock = Callable[[], datetime]

CATALOG_NAMESPACE = "catalog"
HISTORY_NAMESPACE = "history"
STATS_NAMESPACE = "stats"
MEMBER_AFFILIATIONS_NAMESPACE = "member_affiliations"
LINKED_BUSINESSES_NAMESPACE = "linked_businesses"
LINKED_ASSOCIATIONS_NAMESPACE = "linked_associations"
BUSINESS_PROFILE_NAMESPACE = "business_profile"
ASSOCIATION_PROFILE_NAMESPACE = "association_profile"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class _CacheEntry:
    value: Any
    expires_at: datetime
    tags: frozenset[Hashable] = field(default_factory=frozenset)

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(slots=True)
class _LoadSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class BenefitCache:
    """TTL cache keyed by ``(namespace, entity_id, params)`` tuples.

    Entries can carry tags (typically the benefit ids a catalog list contains)
    so a write to one benefit drops every list that mentions it. Instances are
    created by the application or the test and passed to the services that need
    them.
    """

    def __init__(
        self,
        *,
        default_ttl: timedelta | None = None,
        clock: Clock | None = None,
        observability: BenefitObservabilityStore | None = None,
    ) -> None:
        self._default_ttl = default_ttl or timedelta(seconds=settings.benefit_cache_ttl_seconds)
        self._clock = clock or _utcnow
        self._observability = observability or get_benefit_store()
        self._entries: dict[CacheKey, _CacheEntry] = {}
        self._lock = Lock()
        self._load_slots: dict[CacheKey, _LoadSlot] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._next_prune_at = self._clock() + self._default_ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, namespace: str, entity_id: Hashable, params: Hashable = None) -> Any | None:
        """Return the cached value or ``None`` when missing or stale."""

        key: CacheKey = (namespace, entity_id, params)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_valid(now):
                del self._entries[key]
                entry = None
        self._observability.record_cache_lookup(namespace, hit=entry is not None)
        return entry.value if entry is not None else None

    def set(
        self,
        namespace: str,
        entity_id: Hashable,
        params: Hashable,
        value: Any,
        *,
        ttl: timedelta | None = None,
        tags: Iterable[Hashable] = (),
    ) -> None:
        key: CacheKey = (namespace, entity_id, params)
        now = self._clock()
        expires_at = now + (ttl if ttl is not None else self._default_ttl)
        with self._lock:
            if now >= self._next_prune_at:
                self._prune(now)
            self._entries[key] = _CacheEntry(value=value, expires_at=expires_at, tags=frozenset(tags))

    def _generation(self, namespace: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(namespace, 0)

    def _prune(self, now: datetime) -> None:
        expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
        for key in expired:
            del self._entries[key]
        self._next_prune_at = now + self._default_ttl

    async def get_or_load(
        self,
        namespace: str,
        entity_id: Hashable,
        params: Hashable,
        loader: Callable[[], Awaitable[Any]],
        *,
        ttl: timedelta | None = None,
        tags: Callable[[Any], Iterable[Hashable]] | None = None,
    ) -> Any:
        """Return a cached value, running ``loader`` once per key on a miss."""

        cached = self.get(namespace, entity_id, params)
        if cached is not None:
            return cached

        key: CacheKey = (namespace, entity_id, params)
        with self._lock:
            slot = self._load_slots.setdefault(key, _LoadSlot())
            slot.waiters += 1
        try:
            async with slot.lock:
                with self._lock:
                    entry = self._entries.get(key)
                    generation = self._generation(namespace)
                if entry is not None and entry.is_valid(self._clock()):
                    return entry.value

                value = await loader()
                with self._lock:
                    # An invalidation during the load makes the value stale.
                    stale = self._generation(namespace) != generation
                if not stale:
                    self.set(namespace, entity_id, params, value, ttl=ttl, tags=tags(value) if tags else ())
                return value
        finally:
            with self._lock:
                slot.waiters -= 1
                if slot.waiters == 0 and self._load_slots.get(key) is slot:
                    del self._load_slots[key]

    def invalidate(
        self,
        namespace: str | None = None,
        entity_id: Hashable | None = None,
        *,
        tag: Hashable | None = None,
    ) -> int:
        """Drop entries matching every given criterion. No criteria clears the cache."""

        with self._lock:
            if namespace is None:
                self._epoch += 1
            else:
                self._generations[namespace] = self._generations.get(namespace, 0) + 1

            if namespace is None and entity_id is None and tag is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                doomed = [
                    key
                    for key, entry in self._entries.items()
                    if (namespace is None or key[0] == namespace)
                    and (entity_id is None or key[1] == entity_id)
                    and (tag is None or tag in entry.tags)
                ]
                for key in doomed:
                    del self._entries[key]
                removed = len(doomed)
                self._prune(self._clock())

        if removed:
            logger.debug(
                "Benefit cache invalidated",
                namespace=namespace,
                entity_id=str(entity_id) if entity_id is not None else None,
                tag=str(tag) if tag is not None else None,
                removed=removed,
            )
        return removed

    def clear(self) -> None:
        self.invalidate()


__all__ = [
    "ASSOCIATION_PROFILE_NAMESPACE",
    "BUSINESS_PROFILE_NAMESPACE",
    "BenefitCache",
    "CATALOG_NAMESPACE",
    "CacheKey",
    "HISTORY_NAMESPACE",
    "LINKED_ASSOCIATIONS_NAMESPACE",
    "LINKED_BUSINESSES_NAMESPACE",
    "MEMBER_AFFILIATIONS_NAMESPACE",
    "STATS_NAMESPACE",
]
