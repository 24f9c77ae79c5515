"""Facade over catalog resolution, benefit administration and redemption."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fidelya_api.core.settings import settings
from fidelya_api.models.benefits import AccessMode, Benefit, BenefitAssociationGrant, BenefitState
from fidelya_api.observability.benefits import get_benefit_store

from .cache import HISTORY_NAMESPACE, STATS_NAMESPACE, BenefitCache
from .catalog import BenefitCatalog
from .eligibility import CatalogFilter
from .errors import BenefitNotFoundError, BenefitValidationError
from .forms import BenefitForm, BenefitPatch, OwnerRole, validate_benefit_form, validate_benefit_patch
from .identity import IdentityResolver
from .records import BenefitRecord, CatalogEntry, EntityProfile, MemberSnapshot, RedemptionRecord, ensure_aware
from .redemption import CENT, RedemptionTransactor, refresh_business_benefit_count
from .repository import BenefitRepository
from .stats import BenefitStats, StatsFilter, compute_benefit_stats


@dataclass(slots=True)
class SweepSummary:
    expired: int
    benefit_ids: list[UUID] = field(default_factory=list)
    business_ids: list[UUID] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "expired": self.expired,
            "benefit_ids": [str(benefit_id) for benefit_id in self.benefit_ids],
            "business_ids": [str(business_id) for business_id in self.business_ids],
        }


def _positive_or_none(value: int | None) -> int | None:
    return value if value is not None and value > 0 else None


class BenefitService:
    """Entry point of the benefit engine.

    Each instance wires a repository, identity resolver, catalog and redemption
    transactor around the injected session factory and cache; the cache is the
    only state shared between instances.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: BenefitCache,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._repository = BenefitRepository(session_factory, timeout_seconds=timeout_seconds)
        self._identity = IdentityResolver(self._repository, cache)
        self._catalog = BenefitCatalog(self._repository, self._identity, cache)
        self._transactor = RedemptionTransactor(
            session_factory,
            self._repository,
            self._identity,
            self._catalog,
            cache,
            timeout_seconds=timeout_seconds,
        )
        self._history_ttl = timedelta(seconds=settings.redemption_history_cache_ttl_seconds)
        self._observability = get_benefit_store()

    @property
    def identity(self) -> IdentityResolver:
        return self._identity

    # Browsing ----------------------------------------------------------------------------

    async def list_available_benefits(
        self,
        member_id: UUID,
        association_id: UUID | None = None,
        catalog_filter: CatalogFilter | None = None,
        limit: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[CatalogEntry]:
        return await self._catalog.list_available(member_id, association_id, catalog_filter, limit, now=now)

    async def get_benefit(self, benefit_id: UUID) -> BenefitRecord:
        benefit = await self._repository.get_benefit(benefit_id)
        if benefit is None:
            raise BenefitNotFoundError(f"Benefit {benefit_id} not found")
        return benefit

    async def list_categories(self) -> list[str]:
        return await self._repository.list_categories()

    async def list_business_benefits(self, business_id: UUID) -> list[BenefitRecord]:
        """Every benefit of a business except deactivated ones."""

        return await self._repository.list_benefits(business_id=business_id, exclude_states=(BenefitState.INACTIVE,))

    async def list_association_benefits(self, association_id: UUID) -> list[BenefitRecord]:
        return await self._repository.list_benefits(association_id=association_id)

    async def list_business_associations(self, business_id: UUID) -> list[EntityProfile]:
        association_ids = await self._identity.resolve_linked_associations(business_id)
        return await self._repository.list_association_profiles(association_ids)

    async def check_member_access(self, benefit_id: UUID, association_ids: list[UUID]) -> bool:
        """Whether a member in ``association_ids`` may see the benefit."""

        benefit = await self.get_benefit(benefit_id)
        if benefit.access_mode in (AccessMode.PUBLIC, AccessMode.DIRECT):
            return True
        return bool(set(benefit.association_ids) & set(association_ids))

    # Administration ----------------------------------------------------------------------

    async def create_benefit(
        self,
        form: BenefitForm,
        owner_id: UUID,
        owner_role: OwnerRole,
        *,
        now: datetime | None = None,
    ) -> UUID:
        owner_role = OwnerRole(owner_role)
        errors = validate_benefit_form(form, owner_role, now=now)

        business_profile: EntityProfile | None = None
        association_profile: EntityProfile | None = None
        if owner_role == OwnerRole.BUSINESS:
            business_profile = await self._identity.resolve_business_profile(owner_id)
            if business_profile is None:
                errors.append("Business profile could not be resolved")
            grants = list(form.association_ids) or await self._identity.resolve_linked_associations(owner_id)
        else:
            association_profile = await self._identity.resolve_association_profile(owner_id)
            if association_profile is None:
                errors.append("Association profile could not be resolved")
            if form.business_id is not None:
                business_profile = await self._identity.resolve_business_profile(form.business_id)
                if business_profile is None:
                    errors.append("Business profile could not be resolved")
            grants = [owner_id]

        grants = list(dict.fromkeys(grants))
        if form.access_mode == AccessMode.ASSOCIATION and not grants:
            errors.append("Association benefits must be granted to at least one association")
        if errors:
            raise BenefitValidationError(errors)

        access_mode = AccessMode.ASSOCIATION if grants else (form.access_mode or AccessMode.PUBLIC)
        benefit = Benefit(
            title=form.title.strip(),
            description=form.description.strip(),
            category=form.category.strip(),
            conditions=form.conditions.strip() if form.conditions and form.conditions.strip() else None,
            discount_kind=form.discount_kind,
            discount_value=Decimal(str(form.discount_value)).quantize(CENT),
            starts_at=ensure_aware(form.starts_at),
            ends_at=ensure_aware(form.ends_at),
            state=BenefitState.ACTIVE,
            access_mode=access_mode,
            business_id=business_profile.id,
            business_name=business_profile.name,
            business_logo_url=business_profile.logo_url,
            owner_association_id=association_profile.id if association_profile else None,
            owner_association_name=association_profile.name if association_profile else None,
            created_by=owner_id,
            global_quota=_positive_or_none(form.global_quota),
            per_member_quota=_positive_or_none(form.per_member_quota),
            usage_count=0,
            tags=list(form.tags),
            featured=bool(form.featured),
            grants=[BenefitAssociationGrant(association_id=association_id) for association_id in grants],
        )

        async def _operation(session: AsyncSession) -> UUID:
            async with session.begin():
                session.add(benefit)
                await session.flush()
                await refresh_business_benefit_count(session, benefit.business_id)
                return benefit.id

        benefit_id = await self._repository.run(_operation, label="create_benefit")
        self._catalog.invalidate_all()
        self._cache.invalidate(STATS_NAMESPACE)
        logger.info(
            "Benefit created",
            benefit_id=str(benefit_id),
            owner_id=str(owner_id),
            owner_role=owner_role.value,
            access_mode=access_mode.value,
            grants=len(grants),
        )
        return benefit_id

    async def update_benefit(self, benefit_id: UUID, patch: BenefitPatch) -> None:
        current = await self.get_benefit(benefit_id)
        errors = validate_benefit_patch(patch, current_kind=current.discount_kind)

        starts_at = ensure_aware(patch.starts_at) or current.starts_at
        ends_at = ensure_aware(patch.ends_at) or current.ends_at
        if (patch.starts_at or patch.ends_at) and starts_at and ends_at and ends_at <= starts_at:
            errors.append("End date must be after the start date")
        if errors:
            raise BenefitValidationError(list(dict.fromkeys(errors)))

        changes = patch.provided()

        async def _operation(session: AsyncSession) -> None:
            async with session.begin():
                benefit = await session.get(Benefit, benefit_id)
                if benefit is None:
                    raise BenefitNotFoundError(f"Benefit {benefit_id} not found")
                for name, value in changes.items():
                    if name == "association_ids":
                        self._replace_grants(benefit, value)
                    elif name in ("global_quota", "per_member_quota"):
                        setattr(benefit, name, _positive_or_none(value))
                    elif name == "conditions":
                        benefit.conditions = value.strip() or None
                    elif name == "tags":
                        benefit.tags = list(value)
                    elif name == "discount_value":
                        benefit.discount_value = Decimal(str(value)).quantize(CENT)
                    elif name in ("starts_at", "ends_at"):
                        setattr(benefit, name, ensure_aware(value))
                    elif name in ("title", "description", "category"):
                        setattr(benefit, name, value.strip())
                    else:
                        setattr(benefit, name, value)
                if (
                    benefit.state == BenefitState.ACTIVE
                    and benefit.global_quota is not None
                    and benefit.usage_count >= benefit.global_quota
                ):
                    benefit.state = BenefitState.EXHAUSTED
                await session.flush()
                await refresh_business_benefit_count(session, benefit.business_id)

        await self._repository.run(_operation, label="update_benefit")
        if changes.keys() & {"access_mode", "association_ids"}:
            # Cached lists that never held this benefit can still gain it.
            self._catalog.invalidate_all()
        else:
            self._catalog.invalidate_benefit(benefit_id)
        self._cache.invalidate(STATS_NAMESPACE)
        logger.info("Benefit updated", benefit_id=str(benefit_id), fields=sorted(changes))

    @staticmethod
    def _replace_grants(benefit: Benefit, association_ids: list[UUID]) -> None:
        wanted = list(dict.fromkeys(association_ids))
        for grant in list(benefit.grants):
            if grant.association_id not in wanted:
                benefit.grants.remove(grant)
        existing = {grant.association_id for grant in benefit.grants}
        for association_id in wanted:
            if association_id not in existing:
                benefit.grants.append(BenefitAssociationGrant(association_id=association_id))

    async def deactivate_benefit(self, benefit_id: UUID) -> None:
        """Soft delete: the benefit moves to ``inactive`` and is never removed."""

        async def _operation(session: AsyncSession) -> None:
            async with session.begin():
                benefit = await session.get(Benefit, benefit_id)
                if benefit is None:
                    raise BenefitNotFoundError(f"Benefit {benefit_id} not found")
                benefit.state = BenefitState.INACTIVE
                await session.flush()
                await refresh_business_benefit_count(session, benefit.business_id)

        await self._repository.run(_operation, label="deactivate_benefit")
        self._catalog.invalidate_benefit(benefit_id)
        self._cache.invalidate(STATS_NAMESPACE)
        logger.info("Benefit deactivated", benefit_id=str(benefit_id))

    # Redemption --------------------------------------------------------------------------

    async def redeem(
        self,
        benefit_id: UUID,
        member_id: UUID,
        member_snapshot: MemberSnapshot,
        business_id: UUID,
        association_id: UUID | None = None,
        original_amount: Decimal | None = None,
        *,
        now: datetime | None = None,
    ) -> RedemptionRecord:
        return await self._transactor.redeem(
            benefit_id,
            member_id,
            member_snapshot,
            business_id,
            association_id,
            original_amount,
            now=now,
        )

    async def get_redemption_history(self, member_id: UUID, limit: int = 50) -> list[RedemptionRecord]:
        async def _load() -> tuple[RedemptionRecord, ...]:
            return tuple(await self._repository.list_redemptions(member_id=member_id, limit=limit))

        history = await self._cache.get_or_load(HISTORY_NAMESPACE, member_id, limit, _load, ttl=self._history_ttl)
        return list(history)

    async def list_association_redemptions(
        self,
        benefit_id: UUID,
        association_id: UUID,
        limit: int = 50,
    ) -> list[RedemptionRecord]:
        return await self._repository.list_redemptions(benefit_id=benefit_id, association_id=association_id, limit=limit)

    # Reporting ---------------------------------------------------------------------------

    async def compute_stats(self, stats_filter: StatsFilter | None = None, *, now: datetime | None = None) -> BenefitStats:
        stats_filter = stats_filter or StatsFilter()

        async def _load() -> BenefitStats:
            if stats_filter.member_id is not None:
                entries = await self.list_available_benefits(stats_filter.member_id, stats_filter.association_id, now=now)
                benefits = [entry.benefit for entry in entries]
                redemptions = await self.get_redemption_history(stats_filter.member_id)
            else:
                benefits, redemptions = await asyncio.gather(
                    self._repository.list_benefits(
                        business_id=stats_filter.business_id,
                        association_id=stats_filter.association_id,
                    ),
                    self._repository.list_redemptions(
                        business_id=stats_filter.business_id,
                        association_id=stats_filter.association_id,
                        since=stats_filter.since,
                        until=stats_filter.until,
                    ),
                )
            return compute_benefit_stats(benefits, redemptions, now=now)

        return await self._cache.get_or_load(STATS_NAMESPACE, stats_filter.member_id, stats_filter, _load)

    # Maintenance -------------------------------------------------------------------------

    async def sweep_expired_benefits(self, now: datetime | None = None) -> SweepSummary:
        """Move active benefits whose window has closed to ``expired`` in one transaction."""

        reference = ensure_aware(now) or datetime.now(timezone.utc)

        async def _operation(session: AsyncSession) -> SweepSummary:
            async with session.begin():
                rows = (
                    await session.execute(
                        select(Benefit.id, Benefit.business_id).where(
                            Benefit.state == BenefitState.ACTIVE,
                            Benefit.ends_at.is_not(None),
                            Benefit.ends_at <= reference,
                        )
                    )
                ).all()
                if not rows:
                    return SweepSummary(expired=0)

                benefit_ids = [row.id for row in rows]
                business_ids = list(dict.fromkeys(row.business_id for row in rows))
                await session.execute(
                    update(Benefit)
                    .where(Benefit.id.in_(benefit_ids), Benefit.state == BenefitState.ACTIVE)
                    .values(state=BenefitState.EXPIRED)
                    .execution_options(synchronize_session=False)
                )
                for business_id in business_ids:
                    await refresh_business_benefit_count(session, business_id)
                return SweepSummary(expired=len(benefit_ids), benefit_ids=benefit_ids, business_ids=business_ids)

        summary = await self._repository.run(_operation, label="sweep_expired_benefits")
        if summary.expired:
            self._catalog.invalidate_all()
            self._cache.invalidate(STATS_NAMESPACE)
        self._observability.record_sweep(summary.expired)
        logger.info("Expired benefit sweep completed", expired=summary.expired, businesses=len(summary.business_ids))
        return summary

    async def sync_business_benefit_counters(self) -> int:
        """Recompute ``active_benefit_count`` for every business."""

        business_ids = await self._repository.list_business_ids()

        async def _operation(session: AsyncSession) -> int:
            async with session.begin():
                for business_id in business_ids:
                    await refresh_business_benefit_count(session, business_id)
            return len(business_ids)

        synced = await self._repository.run(_operation, label="sync_business_counters")
        logger.info("Business benefit counters synced", businesses=synced)
        return synced


__all__ = ["BenefitService", "SweepSummary"]
