"""Read queries against the benefit record store."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Sequence, TypeVar
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fidelya_api.core.settings import settings
from fidelya_api.models.affiliation import (
    AffiliationStatus,
    Association,
    Business,
    BusinessAssociationLink,
    Member,
)
from fidelya_api.models.benefits import (
    AccessMode,
    Benefit,
    BenefitAssociationGrant,
    BenefitState,
    Redemption,
    RedemptionStatus,
)

from .errors import StoreUnavailableError
from .records import BenefitRecord, EntityProfile, MemberAffiliations, RedemptionRecord

T = TypeVar("T")


class BenefitRepository:
    """Opens one short-lived session per query so independent reads can run concurrently."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds

    async def run(self, operation: Callable[[AsyncSession], Awaitable[T]], *, label: str) -> T:
        """Execute ``operation`` in a fresh session under the store deadline."""

        async def _execute() -> T:
            async with self._session_factory() as session:
                return await operation(session)

        try:
            return await asyncio.wait_for(_execute(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as error:
            logger.warning("Benefit store query timed out", query=label, timeout_seconds=self._timeout_seconds)
            raise StoreUnavailableError(f"Query '{label}' timed out") from error
        except SQLAlchemyError as error:
            logger.warning("Benefit store query failed", query=label, error=str(error))
            raise StoreUnavailableError(f"Query '{label}' failed") from error

    async def _fetch_benefits(self, stmt, *, label: str) -> list[BenefitRecord]:
        async def _operation(session: AsyncSession) -> list[BenefitRecord]:
            result = await session.execute(stmt)
            return [BenefitRecord.from_model(benefit) for benefit in result.scalars().unique().all()]

        return await self.run(_operation, label=label)

    # Catalog queries -----------------------------------------------------------------

    async def list_granted_to_association(self, association_id: UUID, *, limit: int) -> list[BenefitRecord]:
        stmt = (
            select(Benefit)
            .join(BenefitAssociationGrant, BenefitAssociationGrant.benefit_id == Benefit.id)
            .where(
                BenefitAssociationGrant.association_id == association_id,
                Benefit.access_mode == AccessMode.ASSOCIATION,
                Benefit.state == BenefitState.ACTIVE,
            )
            .order_by(Benefit.created_at.desc())
            .limit(limit)
        )
        return await self._fetch_benefits(stmt, label="granted_to_association")

    async def list_by_access_mode(self, access_mode: AccessMode, *, limit: int) -> list[BenefitRecord]:
        stmt = (
            select(Benefit)
            .where(Benefit.access_mode == access_mode, Benefit.state == BenefitState.ACTIVE)
            .order_by(Benefit.created_at.desc())
            .limit(limit)
        )
        return await self._fetch_benefits(stmt, label=f"access_mode:{access_mode.value}")

    async def list_by_businesses(self, business_ids: Sequence[UUID]) -> list[BenefitRecord]:
        if not business_ids:
            return []
        stmt = (
            select(Benefit)
            .where(Benefit.business_id.in_(list(business_ids)), Benefit.state == BenefitState.ACTIVE)
            .order_by(Benefit.created_at.desc())
        )
        return await self._fetch_benefits(stmt, label="by_businesses")

    async def list_active(self, *, limit: int) -> list[BenefitRecord]:
        stmt = (
            select(Benefit)
            .where(Benefit.state == BenefitState.ACTIVE)
            .order_by(Benefit.created_at.desc())
            .limit(limit)
        )
        return await self._fetch_benefits(stmt, label="active")

    async def get_benefit(self, benefit_id: UUID) -> BenefitRecord | None:
        async def _operation(session: AsyncSession) -> BenefitRecord | None:
            benefit = await session.get(Benefit, benefit_id)
            return BenefitRecord.from_model(benefit) if benefit is not None else None

        return await self.run(_operation, label="get_benefit")

    async def list_benefits(
        self,
        *,
        business_id: UUID | None = None,
        association_id: UUID | None = None,
        exclude_states: Sequence[BenefitState] = (),
    ) -> list[BenefitRecord]:
        stmt = select(Benefit)
        if business_id is not None:
            stmt = stmt.where(Benefit.business_id == business_id)
        if association_id is not None:
            stmt = stmt.join(BenefitAssociationGrant, BenefitAssociationGrant.benefit_id == Benefit.id).where(
                BenefitAssociationGrant.association_id == association_id
            )
        if exclude_states:
            stmt = stmt.where(Benefit.state.not_in(list(exclude_states)))
        stmt = stmt.order_by(Benefit.created_at.desc())
        return await self._fetch_benefits(stmt, label="list_benefits")

    async def list_categories(self) -> list[str]:
        async def _operation(session: AsyncSession) -> list[str]:
            stmt = (
                select(Benefit.category)
                .where(Benefit.state == BenefitState.ACTIVE)
                .distinct()
                .order_by(Benefit.category)
            )
            result = await session.execute(stmt)
            return [category for category in result.scalars().all() if category]

        return await self.run(_operation, label="list_categories")

    # Affiliation queries -------------------------------------------------------------

    async def get_member_affiliations(self, member_id: UUID) -> MemberAffiliations | None:
        async def _operation(session: AsyncSession) -> MemberAffiliations | None:
            member = await session.get(Member, member_id)
            if member is None:
                return None
            return MemberAffiliations(
                association_id=member.association_id,
                business_ids=tuple(link.business_id for link in member.business_affiliations),
            )

        return await self.run(_operation, label="member_affiliations")

    async def list_linked_business_ids(self, association_id: UUID) -> list[UUID]:
        async def _operation(session: AsyncSession) -> list[UUID]:
            stmt = (
                select(BusinessAssociationLink.business_id)
                .join(Business, Business.id == BusinessAssociationLink.business_id)
                .where(
                    BusinessAssociationLink.association_id == association_id,
                    Business.status == AffiliationStatus.ACTIVE,
                )
            )
            result = await session.execute(stmt)
            return list(dict.fromkeys(result.scalars().all()))

        return await self.run(_operation, label="linked_businesses")

    async def list_linked_association_ids(self, business_id: UUID) -> list[UUID]:
        async def _operation(session: AsyncSession) -> list[UUID]:
            stmt = select(BusinessAssociationLink.association_id).where(
                BusinessAssociationLink.business_id == business_id
            )
            result = await session.execute(stmt)
            return list(dict.fromkeys(result.scalars().all()))

        return await self.run(_operation, label="linked_associations")

    async def get_business_profile(self, business_id: UUID) -> EntityProfile | None:
        async def _operation(session: AsyncSession) -> EntityProfile | None:
            business = await session.get(Business, business_id)
            if business is None:
                return None
            return EntityProfile(
                id=business.id,
                name=business.name,
                logo_url=business.logo_url,
                association_ids=tuple(business.association_ids),
            )

        return await self.run(_operation, label="business_profile")

    async def get_association_profile(self, association_id: UUID) -> EntityProfile | None:
        async def _operation(session: AsyncSession) -> EntityProfile | None:
            association = await session.get(Association, association_id)
            if association is None:
                return None
            return EntityProfile(id=association.id, name=association.name, logo_url=association.logo_url)

        return await self.run(_operation, label="association_profile")

    async def list_association_profiles(self, association_ids: Sequence[UUID]) -> list[EntityProfile]:
        if not association_ids:
            return []

        async def _operation(session: AsyncSession) -> list[EntityProfile]:
            stmt = select(Association).where(Association.id.in_(list(association_ids))).order_by(Association.name)
            result = await session.execute(stmt)
            return [
                EntityProfile(id=association.id, name=association.name, logo_url=association.logo_url)
                for association in result.scalars().all()
            ]

        return await self.run(_operation, label="association_profiles")

    async def list_business_ids(self) -> list[UUID]:
        async def _operation(session: AsyncSession) -> list[UUID]:
            result = await session.execute(select(Business.id))
            return list(result.scalars().all())

        return await self.run(_operation, label="business_ids")

    # Redemption queries --------------------------------------------------------------

    async def count_member_redemptions(self, benefit_id: UUID, member_id: UUID) -> int:
        async def _operation(session: AsyncSession) -> int:
            stmt = select(func.count(Redemption.id)).where(
                and_(
                    Redemption.benefit_id == benefit_id,
                    Redemption.member_id == member_id,
                    Redemption.status == RedemptionStatus.USED,
                )
            )
            return int((await session.execute(stmt)).scalar_one())

        return await self.run(_operation, label="count_member_redemptions")

    async def list_redemptions(
        self,
        *,
        member_id: UUID | None = None,
        benefit_id: UUID | None = None,
        business_id: UUID | None = None,
        association_id: UUID | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[RedemptionRecord]:
        stmt = select(Redemption)
        if member_id is not None:
            stmt = stmt.where(Redemption.member_id == member_id)
        if benefit_id is not None:
            stmt = stmt.where(Redemption.benefit_id == benefit_id)
        if business_id is not None:
            stmt = stmt.where(Redemption.business_id == business_id)
        if association_id is not None:
            stmt = stmt.where(Redemption.association_id == association_id)
        if since is not None:
            stmt = stmt.where(Redemption.redeemed_at >= since)
        if until is not None:
            stmt = stmt.where(Redemption.redeemed_at <= until)
        stmt = stmt.order_by(Redemption.redeemed_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async def _operation(session: AsyncSession) -> list[RedemptionRecord]:
            result = await session.execute(stmt)
            return [RedemptionRecord.from_model(redemption) for redemption in result.scalars().all()]

        return await self.run(_operation, label="list_redemptions")


__all__ = ["BenefitRepository"]
