"""Resolve the benefits a member can see across every affiliation path."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Iterable, Sequence
from uuid import UUID

from loguru import logger

from fidelya_api.core.settings import settings
from fidelya_api.models.benefits import AccessMode
from fidelya_api.observability.benefits import get_benefit_store

from .cache import CATALOG_NAMESPACE, BenefitCache
from .eligibility import CatalogFilter, apply_catalog_filter, filter_valid, merge_benefits
from .errors import StoreUnavailableError
from .identity import IdentityResolver
from .records import BenefitRecord, CatalogEntry, CatalogOrigin
from .repository import BenefitRepository


def chunked(values: Sequence[UUID], size: int) -> list[list[UUID]]:
    size = max(size, 1)
    return [list(values[index : index + size]) for index in range(0, len(values), size)]


def _tag(benefits: Iterable[BenefitRecord], origin: CatalogOrigin) -> list[CatalogEntry]:
    return [CatalogEntry(benefit=benefit, origin=origin) for benefit in benefits]


class BenefitCatalog:
    """Aggregate association, business, public and direct benefits for a member.

    Store results are cached per ``(member, association, filter, limit)``; the
    validity filter and caller filters run on every call so cached lists never
    surface a benefit that stopped being redeemable.
    """

    def __init__(
        self,
        repository: BenefitRepository,
        identity: IdentityResolver,
        cache: BenefitCache,
        *,
        public_cap: int | None = None,
        direct_cap: int | None = None,
        chunk_size: int | None = None,
        cache_ttl: timedelta | None = None,
    ) -> None:
        self._repository = repository
        self._identity = identity
        self._cache = cache
        self._public_cap = public_cap or settings.catalog_public_cap
        self._direct_cap = direct_cap or settings.catalog_direct_cap
        self._chunk_size = chunk_size or settings.catalog_business_chunk_size
        self._cache_ttl = cache_ttl or timedelta(seconds=settings.benefit_cache_ttl_seconds)
        self._observability = get_benefit_store()

    async def list_available(
        self,
        member_id: UUID,
        association_id: UUID | None = None,
        catalog_filter: CatalogFilter | None = None,
        limit: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[CatalogEntry]:
        limit = limit or settings.catalog_default_limit
        catalog_filter = catalog_filter or CatalogFilter()

        raw_entries = await self._cache.get_or_load(
            CATALOG_NAMESPACE,
            member_id,
            (association_id, catalog_filter, limit),
            lambda: self._resolve(member_id, association_id, limit),
            ttl=self._cache_ttl,
            tags=lambda entries: {entry.benefit.id for entry in entries},
        )

        valid = filter_valid(raw_entries, now=now)
        return apply_catalog_filter(valid, catalog_filter, now=now)[:limit]

    async def _resolve(self, member_id: UUID, association_id: UUID | None, limit: int) -> tuple[CatalogEntry, ...]:
        if association_id is not None:
            entries = await self._resolve_for_association(association_id, limit)
            branch = "association"
        else:
            entries = await self._resolve_without_association(member_id, limit)
            branch = "member"

        logger.debug(
            "Resolved benefit catalog",
            member_id=str(member_id),
            association_id=str(association_id) if association_id else None,
            branch=branch,
            entries=len(entries),
        )
        return tuple(entries)

    async def _resolve_for_association(self, association_id: UUID, limit: int) -> list[CatalogEntry]:
        granted, linked, public = await asyncio.gather(
            self._guarded(
                CatalogOrigin.ASSOCIATION,
                self._repository.list_granted_to_association(association_id, limit=limit),
            ),
            self._linked_business_benefits(association_id),
            self._guarded(
                CatalogOrigin.PUBLIC,
                self._repository.list_by_access_mode(AccessMode.PUBLIC, limit=self._public_cap),
            ),
        )
        return merge_benefits(
            [
                *_tag(granted, CatalogOrigin.ASSOCIATION),
                *_tag(linked, CatalogOrigin.LINKED_BUSINESS),
                *_tag(public, CatalogOrigin.PUBLIC),
            ]
        )

    async def _resolve_without_association(self, member_id: UUID, limit: int) -> list[CatalogEntry]:
        public, direct, affiliated = await asyncio.gather(
            self._guarded(
                CatalogOrigin.PUBLIC,
                self._repository.list_by_access_mode(AccessMode.PUBLIC, limit=limit),
            ),
            self._guarded(
                CatalogOrigin.DIRECT,
                self._repository.list_by_access_mode(AccessMode.DIRECT, limit=self._direct_cap),
            ),
            self._affiliated_business_benefits(member_id),
        )
        entries = merge_benefits(
            [
                *_tag(public, CatalogOrigin.PUBLIC),
                *_tag(direct, CatalogOrigin.DIRECT),
                *_tag(affiliated, CatalogOrigin.AFFILIATED_BUSINESS),
            ]
        )
        if entries:
            return entries

        fallback = await self._guarded(CatalogOrigin.FALLBACK, self._repository.list_active(limit=limit))
        logger.info("Benefit catalog fell back to all active benefits", member_id=str(member_id), entries=len(fallback))
        return _tag(fallback, CatalogOrigin.FALLBACK)

    async def _linked_business_benefits(self, association_id: UUID) -> list[BenefitRecord]:
        business_ids = await self._identity.resolve_linked_businesses(association_id)
        return await self._business_benefits(business_ids, CatalogOrigin.LINKED_BUSINESS)

    async def _affiliated_business_benefits(self, member_id: UUID) -> list[BenefitRecord]:
        business_ids = await self._identity.resolve_affiliated_businesses(member_id)
        return await self._business_benefits(business_ids, CatalogOrigin.AFFILIATED_BUSINESS)

    async def _business_benefits(self, business_ids: Sequence[UUID], origin: CatalogOrigin) -> list[BenefitRecord]:
        if not business_ids:
            return []
        chunks = chunked(list(business_ids), self._chunk_size)
        results = await asyncio.gather(
            *(self._guarded(origin, self._repository.list_by_businesses(chunk)) for chunk in chunks)
        )
        return [benefit for chunk_result in results for benefit in chunk_result]

    async def _guarded(self, origin: CatalogOrigin, query: Awaitable[list[BenefitRecord]]) -> list[BenefitRecord]:
        """Run one path query; a store failure contributes nothing instead of failing the catalog."""

        try:
            return await query
        except StoreUnavailableError as error:
            self._observability.record_degraded_path(f"catalog:{origin.value}")
            logger.warning("Benefit catalog path degraded", origin=origin.value, error=str(error))
            return []

    def invalidate_benefit(self, benefit_id: UUID) -> int:
        return self._cache.invalidate(CATALOG_NAMESPACE, tag=benefit_id)

    def invalidate_all(self) -> int:
        return self._cache.invalidate(CATALOG_NAMESPACE)


__all__ = ["BenefitCatalog", "chunked"]
