"""Cached lookups of member, business and association affiliations."""

from __future__ import annotations

from typing import Awaitable, Callable, TypeVar
from uuid import UUID

from loguru import logger

from fidelya_api.observability.benefits import get_benefit_store

from .cache import (
    ASSOCIATION_PROFILE_NAMESPACE,
    BUSINESS_PROFILE_NAMESPACE,
    LINKED_ASSOCIATIONS_NAMESPACE,
    LINKED_BUSINESSES_NAMESPACE,
    MEMBER_AFFILIATIONS_NAMESPACE,
    BenefitCache,
)
from .errors import StoreUnavailableError
from .records import EntityProfile, MemberAffiliations
from .repository import BenefitRepository

T = TypeVar("T")


class IdentityResolver:
    """Resolve affiliation facts owned by account provisioning.

    Missing entities resolve to empty results; "no affiliation" is the normal
    state for most members. A failing store read degrades the same way so
    browsing keeps working.
    """

    def __init__(self, repository: BenefitRepository, cache: BenefitCache) -> None:
        self._repository = repository
        self._cache = cache
        self._observability = get_benefit_store()

    async def _cached(self, namespace: str, entity_id: UUID, loader: Callable[[], Awaitable[T]], empty: T) -> T:
        cached = self._cache.get(namespace, entity_id)
        if cached is not None:
            return cached

        try:
            value = await loader()
        except StoreUnavailableError as error:
            # not cached, the next call retries the store
            self._observability.record_degraded_path(namespace)
            logger.warning("Affiliation lookup degraded", namespace=namespace, entity_id=str(entity_id), error=str(error))
            return empty

        value = empty if value is None else value
        self._cache.set(namespace, entity_id, None, value)
        return value

    async def resolve_member_affiliations(self, member_id: UUID) -> MemberAffiliations:
        return await self._cached(
            MEMBER_AFFILIATIONS_NAMESPACE,
            member_id,
            lambda: self._repository.get_member_affiliations(member_id),
            MemberAffiliations(),
        )

    async def resolve_linked_businesses(self, association_id: UUID) -> list[UUID]:
        business_ids = await self._cached(
            LINKED_BUSINESSES_NAMESPACE,
            association_id,
            lambda: self._repository.list_linked_business_ids(association_id),
            [],
        )
        return list(business_ids)

    async def resolve_linked_associations(self, business_id: UUID) -> list[UUID]:
        association_ids = await self._cached(
            LINKED_ASSOCIATIONS_NAMESPACE,
            business_id,
            lambda: self._repository.list_linked_association_ids(business_id),
            [],
        )
        return list(association_ids)

    async def resolve_affiliated_businesses(self, member_id: UUID) -> list[UUID]:
        """Direct affiliations plus the businesses linked to the member's association."""

        affiliations = await self.resolve_member_affiliations(member_id)
        business_ids = list(affiliations.business_ids)
        if affiliations.association_id is not None:
            business_ids.extend(await self.resolve_linked_businesses(affiliations.association_id))
        return list(dict.fromkeys(business_ids))

    async def resolve_business_profile(self, business_id: UUID) -> EntityProfile | None:
        cached = self._cache.get(BUSINESS_PROFILE_NAMESPACE, business_id)
        if cached is not None:
            return cached
        profile = await self._repository.get_business_profile(business_id)
        if profile is not None:
            self._cache.set(BUSINESS_PROFILE_NAMESPACE, business_id, None, profile)
        return profile

    async def resolve_association_profile(self, association_id: UUID) -> EntityProfile | None:
        cached = self._cache.get(ASSOCIATION_PROFILE_NAMESPACE, association_id)
        if cached is not None:
            return cached
        profile = await self._repository.get_association_profile(association_id)
        if profile is not None:
            self._cache.set(ASSOCIATION_PROFILE_NAMESPACE, association_id, None, profile)
        return profile


__all__ = ["IdentityResolver"]
