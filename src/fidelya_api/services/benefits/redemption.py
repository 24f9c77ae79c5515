"""Redemption validation, discount computation and the atomic usage write."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fidelya_api.core.settings import settings
from fidelya_api.models.affiliation import Business
from fidelya_api.models.benefits import (
    AccessMode,
    Benefit,
    BenefitState,
    DiscountKind,
    Redemption,
    RedemptionStatus,
)
from fidelya_api.observability.benefits import get_benefit_store
from fidelya_api.observability.tracing import get_tracer

from .cache import HISTORY_NAMESPACE, STATS_NAMESPACE, BenefitCache
from .catalog import BenefitCatalog
from .eligibility import coerce_instant
from .errors import (
    AccessDeniedError,
    BenefitEngineError,
    BenefitExpiredError,
    BenefitNotActiveError,
    BenefitNotFoundError,
    BenefitNotYetStartedError,
    PerMemberQuotaExceededError,
    QuotaExhaustedError,
    StoreUnavailableError,
)
from .identity import IdentityResolver
from .records import BenefitRecord, MemberAffiliations, MemberSnapshot, RedemptionRecord, ensure_aware
from .repository import BenefitRepository

CENT = Decimal("0.01")
_tracer = get_tracer(__name__)


def compute_discount(kind: DiscountKind | str, value: Decimal | float | int, original_amount: Decimal | float | int | None) -> Decimal:
    """Discount granted on a purchase of ``original_amount``; a missing amount counts as zero."""

    original = Decimal(str(original_amount)) if original_amount is not None else Decimal("0")
    magnitude = Decimal(str(value))
    try:
        kind = DiscountKind(kind)
    except ValueError:
        return Decimal("0.00")

    if kind is DiscountKind.PERCENTAGE:
        discount = original * magnitude / Decimal("100")
    elif kind is DiscountKind.FIXED_AMOUNT:
        discount = min(magnitude, original)
    else:
        discount = original
    return max(discount, Decimal("0")).quantize(CENT, rounding=ROUND_HALF_UP)


async def refresh_business_benefit_count(session: AsyncSession, business_id: UUID) -> int:
    """Recompute the denormalized active benefit counter of a business inside ``session``."""

    count_stmt = select(func.count(Benefit.id)).where(
        Benefit.business_id == business_id,
        Benefit.state == BenefitState.ACTIVE,
    )
    active = int((await session.execute(count_stmt)).scalar_one())
    await session.execute(
        update(Business)
        .where(Business.id == business_id)
        .values(active_benefit_count=active)
        .execution_options(synchronize_session=False)
    )
    return active


class RedemptionTransactor:
    """Validate a redemption against live state and record it atomically.

    The usage counter is bumped with a conditional UPDATE guarded on the
    benefit still being active and under quota, so concurrent redemptions can
    never push ``usage_count`` past ``global_quota``. The per-member limit is a
    read-then-write check and may be exceeded by concurrent requests from the
    same member.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: BenefitRepository,
        identity: IdentityResolver,
        catalog: BenefitCatalog,
        cache: BenefitCache,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._repository = repository
        self._identity = identity
        self._catalog = catalog
        self._cache = cache
        self._timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds
        self._observability = get_benefit_store()

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
        reference = ensure_aware(now) or datetime.now(timezone.utc)
        try:
            with _tracer.start_as_current_span("benefit.redeem") as span:
                span.set_attribute("benefit.id", str(benefit_id))
                benefit = await self._repository.get_benefit(benefit_id)
                if benefit is None:
                    raise BenefitNotFoundError(f"Benefit {benefit_id} not found")
                self._check_window(benefit, reference)
                await self._check_member_quota(benefit, member_id)
                affiliations = await self._check_access(benefit, member_id, business_id)

                record = await self._write(
                    benefit,
                    member_id=member_id,
                    member_snapshot=member_snapshot,
                    association_id=association_id or affiliations.association_id,
                    original_amount=original_amount,
                    redeemed_at=reference,
                )
        except BenefitEngineError as error:
            self._observability.record_redemption(error.code)
            logger.info(
                "Benefit redemption rejected",
                benefit_id=str(benefit_id),
                member_id=str(member_id),
                reason=error.code,
            )
            raise

        self._invalidate(benefit, member_id)
        self._observability.record_redemption("used")
        logger.info(
            "Benefit redeemed",
            benefit_id=str(benefit_id),
            member_id=str(member_id),
            redemption_id=str(record.id),
            discount_amount=str(record.discount_amount),
        )
        return record

    def _check_window(self, benefit: BenefitRecord, now: datetime) -> None:
        if benefit.state == BenefitState.EXHAUSTED:
            raise QuotaExhaustedError(f"Benefit {benefit.id} reached its usage limit")
        if benefit.state != BenefitState.ACTIVE:
            raise BenefitNotActiveError(f"Benefit {benefit.id} is {benefit.state.value}")

        ends_at = coerce_instant(benefit.ends_at)
        if ends_at is not None and ends_at <= now:
            raise BenefitExpiredError(f"Benefit {benefit.id} expired at {ends_at.isoformat()}")
        starts_at = coerce_instant(benefit.starts_at)
        if starts_at is not None and starts_at > now:
            raise BenefitNotYetStartedError(f"Benefit {benefit.id} starts at {starts_at.isoformat()}")

        if benefit.global_quota is not None and benefit.usage_count >= benefit.global_quota:
            raise QuotaExhaustedError(f"Benefit {benefit.id} reached its usage limit")

    async def _check_member_quota(self, benefit: BenefitRecord, member_id: UUID) -> None:
        if benefit.per_member_quota is None:
            return
        used = await self._repository.count_member_redemptions(benefit.id, member_id)
        if used >= benefit.per_member_quota:
            raise PerMemberQuotaExceededError(
                f"Member already used benefit {benefit.id} {used} time(s) of {benefit.per_member_quota}"
            )

    async def _check_access(self, benefit: BenefitRecord, member_id: UUID, business_id: UUID) -> MemberAffiliations:
        if benefit.business_id != business_id:
            raise AccessDeniedError(f"Benefit {benefit.id} is not offered by business {business_id}")

        affiliations = await self._repository.get_member_affiliations(member_id) or MemberAffiliations()
        if benefit.access_mode == AccessMode.PUBLIC:
            return affiliations
        if affiliations.association_id is not None and affiliations.association_id in benefit.association_ids:
            return affiliations

        business_ids = set(affiliations.business_ids)
        if affiliations.association_id is not None:
            business_ids.update(await self._repository.list_linked_business_ids(affiliations.association_id))
        if benefit.business_id in business_ids:
            return affiliations

        raise AccessDeniedError(f"Member {member_id} has no access to benefit {benefit.id}")

    async def _write(
        self,
        benefit: BenefitRecord,
        *,
        member_id: UUID,
        member_snapshot: MemberSnapshot,
        association_id: UUID | None,
        original_amount: Decimal | None,
        redeemed_at: datetime,
    ) -> RedemptionRecord:
        discount = compute_discount(benefit.discount_kind, benefit.discount_value, original_amount)
        final_amount: Decimal | None = None
        if original_amount is not None:
            final_amount = max(Decimal(str(original_amount)) - discount, Decimal("0")).quantize(CENT)

        association_name: str | None = None
        if association_id is not None:
            profile = await self._identity.resolve_association_profile(association_id)
            association_name = profile.name if profile else None

        redemption = Redemption(
            benefit_id=benefit.id,
            benefit_title=benefit.title,
            member_id=member_id,
            member_name=member_snapshot.name,
            member_email=member_snapshot.email,
            business_id=benefit.business_id,
            business_name=benefit.business_name,
            association_id=association_id,
            association_name=association_name,
            redeemed_at=redeemed_at,
            discount_amount=discount,
            original_amount=Decimal(str(original_amount)).quantize(CENT) if original_amount is not None else None,
            final_amount=final_amount,
            status=RedemptionStatus.USED,
        )

        async def _transaction() -> None:
            async with self._session_factory() as session:
                async with session.begin():
                    # The counter update runs first so the write lock is taken before any read.
                    claimed = await session.execute(
                        update(Benefit)
                        .where(
                            Benefit.id == benefit.id,
                            Benefit.state == BenefitState.ACTIVE,
                            or_(Benefit.global_quota.is_(None), Benefit.usage_count < Benefit.global_quota),
                        )
                        .values(usage_count=Benefit.usage_count + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        if benefit.global_quota is not None:
                            raise QuotaExhaustedError(f"Benefit {benefit.id} reached its usage limit")
                        raise BenefitNotActiveError(f"Benefit {benefit.id} is no longer active")

                    exhausted = await session.execute(
                        update(Benefit)
                        .where(
                            Benefit.id == benefit.id,
                            Benefit.global_quota.is_not(None),
                            Benefit.usage_count >= Benefit.global_quota,
                        )
                        .values(state=BenefitState.EXHAUSTED)
                        .execution_options(synchronize_session=False)
                    )
                    session.add(redemption)
                    if exhausted.rowcount == 1:
                        await refresh_business_benefit_count(session, benefit.business_id)
                        logger.info("Benefit exhausted", benefit_id=str(benefit.id), global_quota=benefit.global_quota)

        try:
            await asyncio.wait_for(_transaction(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as error:
            raise StoreUnavailableError("Redemption write timed out") from error
        except SQLAlchemyError as error:
            logger.warning("Redemption write failed", benefit_id=str(benefit.id), error=str(error))
            raise StoreUnavailableError("Redemption write failed") from error

        return RedemptionRecord.from_model(redemption)

    def _invalidate(self, benefit: BenefitRecord, member_id: UUID) -> None:
        self._catalog.invalidate_benefit(benefit.id)
        self._cache.invalidate(HISTORY_NAMESPACE, member_id)
        self._cache.invalidate(STATS_NAMESPACE)


__all__ = ["CENT", "RedemptionTransactor", "compute_discount", "refresh_business_benefit_count"]
