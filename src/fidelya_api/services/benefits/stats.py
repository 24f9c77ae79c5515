"""Derive benefit and savings statistics from an already-loaded snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID

from fidelya_api.models.benefits import BenefitState

from .records import BenefitRecord, RedemptionRecord, ensure_aware

TOP_BENEFITS_LIMIT = 10


@dataclass(frozen=True, slots=True)
class StatsFilter:
    """Equality and date-range narrowing for stats snapshots."""

    business_id: UUID | None = None
    association_id: UUID | None = None
    member_id: UUID | None = None
    since: datetime | None = None
    until: datetime | None = None


@dataclass(slots=True)
class MonthlyUsage:
    month: str
    uses: int = 0
    savings: Decimal = Decimal("0")


@dataclass(slots=True)
class BenefitUsage:
    benefit_id: UUID
    title: str
    uses: int = 0
    savings: Decimal = Decimal("0")


@dataclass(slots=True)
class CategoryUsage:
    category: str
    benefits: int = 0
    uses: int = 0


@dataclass(slots=True)
class BusinessUsage:
    business_id: UUID
    business_name: str
    benefits: int = 0
    uses: int = 0


@dataclass(slots=True)
class BenefitStats:
    total_benefits: int
    active_benefits: int
    used_count: int
    expired_count: int
    total_savings: Decimal
    savings_this_month: Decimal
    usage_by_month: list[MonthlyUsage] = field(default_factory=list)
    top_benefits: list[BenefitUsage] = field(default_factory=list)
    by_category: list[CategoryUsage] = field(default_factory=list)
    by_business: list[BusinessUsage] = field(default_factory=list)


def _month_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def compute_benefit_stats(
    benefits: Sequence[BenefitRecord],
    redemptions: Iterable[RedemptionRecord],
    *,
    now: datetime | None = None,
) -> BenefitStats:
    """Aggregate counts and savings. Pure: identical inputs and ``now`` give identical output."""

    reference = ensure_aware(now) or datetime.now(timezone.utc)
    month_start = reference.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    redemptions = list(redemptions)

    total_savings = Decimal("0")
    savings_this_month = Decimal("0")
    by_month: dict[str, MonthlyUsage] = {}
    usage_by_benefit: dict[UUID, BenefitUsage] = {}

    for redemption in redemptions:
        redeemed_at = ensure_aware(redemption.redeemed_at)
        discount = Decimal(redemption.discount_amount or 0)
        total_savings += discount
        if redeemed_at >= month_start:
            savings_this_month += discount

        month = by_month.setdefault(_month_key(redeemed_at), MonthlyUsage(month=_month_key(redeemed_at)))
        month.uses += 1
        month.savings += discount

        usage = usage_by_benefit.setdefault(
            redemption.benefit_id, BenefitUsage(benefit_id=redemption.benefit_id, title=redemption.benefit_title)
        )
        usage.uses += 1
        usage.savings += discount

    top_benefits = sorted(
        (
            BenefitUsage(
                benefit_id=benefit.id,
                title=benefit.title,
                uses=usage_by_benefit[benefit.id].uses if benefit.id in usage_by_benefit else 0,
                savings=usage_by_benefit[benefit.id].savings if benefit.id in usage_by_benefit else Decimal("0"),
            )
            for benefit in benefits
        ),
        key=lambda item: -item.uses,
    )[:TOP_BENEFITS_LIMIT]

    benefits_by_id = {benefit.id: benefit for benefit in benefits}
    categories: dict[str, CategoryUsage] = {}
    for benefit in benefits:
        categories.setdefault(benefit.category, CategoryUsage(category=benefit.category)).benefits += 1

    businesses: dict[UUID, BusinessUsage] = {}
    for benefit in benefits:
        businesses.setdefault(
            benefit.business_id,
            BusinessUsage(business_id=benefit.business_id, business_name=benefit.business_name),
        ).benefits += 1

    for redemption in redemptions:
        benefit = benefits_by_id.get(redemption.benefit_id)
        if benefit is not None:
            categories.setdefault(benefit.category, CategoryUsage(category=benefit.category)).uses += 1
        businesses.setdefault(
            redemption.business_id,
            BusinessUsage(business_id=redemption.business_id, business_name=redemption.business_name),
        ).uses += 1

    return BenefitStats(
        total_benefits=len(benefits),
        active_benefits=sum(1 for benefit in benefits if benefit.state == BenefitState.ACTIVE),
        used_count=len(redemptions),
        expired_count=sum(1 for benefit in benefits if benefit.state == BenefitState.EXPIRED),
        total_savings=total_savings,
        savings_this_month=savings_this_month,
        usage_by_month=[by_month[key] for key in sorted(by_month)],
        top_benefits=top_benefits,
        by_category=list(categories.values()),
        by_business=list(businesses.values()),
    )


__all__ = [
    "BenefitStats",
    "BenefitUsage",
    "BusinessUsage",
    "CategoryUsage",
    "MonthlyUsage",
    "StatsFilter",
    "compute_benefit_stats",
]
