"""Immutable value objects handed out by the benefit engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from fidelya_api.models.benefits import (
    AccessMode,
    Benefit,
    BenefitState,
    DiscountKind,
    Redemption,
    RedemptionStatus,
)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Treat naive datetimes coming back from the store as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CatalogOrigin(str, Enum):
    """Resolution path a catalog entry was found through."""

    ASSOCIATION = "association"
    LINKED_BUSINESS = "linked_business"
    PUBLIC = "public"
    DIRECT = "direct"
    AFFILIATED_BUSINESS = "affiliated_business"
    FALLBACK = "fallback"


@dataclass(frozen=True, slots=True)
class BenefitRecord:
    """Detached snapshot of a benefit row, safe to cache and share."""

    id: UUID
    title: str
    description: str
    category: str
    discount_kind: DiscountKind
    discount_value: Decimal
    state: BenefitState
    access_mode: AccessMode
    business_id: UUID
    business_name: str
    created_by: UUID | None = None
    conditions: str | None = None
    starts_at: Any = None
    ends_at: Any = None
    business_logo_url: str | None = None
    owner_association_id: UUID | None = None
    owner_association_name: str | None = None
    association_ids: tuple[UUID, ...] = ()
    global_quota: int | None = None
    per_member_quota: int | None = None
    usage_count: int = 0
    tags: tuple[str, ...] = ()
    featured: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, benefit: Benefit) -> "BenefitRecord":
        return cls(
            id=benefit.id,
            title=benefit.title,
            description=benefit.description,
            category=benefit.category,
            conditions=benefit.conditions,
            discount_kind=DiscountKind(benefit.discount_kind),
            discount_value=Decimal(benefit.discount_value or 0),
            starts_at=ensure_aware(benefit.starts_at),
            ends_at=ensure_aware(benefit.ends_at),
            state=BenefitState(benefit.state),
            access_mode=AccessMode(benefit.access_mode),
            business_id=benefit.business_id,
            business_name=benefit.business_name,
            business_logo_url=benefit.business_logo_url,
            owner_association_id=benefit.owner_association_id,
            owner_association_name=benefit.owner_association_name,
            created_by=benefit.created_by,
            association_ids=tuple(benefit.association_ids),
            global_quota=benefit.global_quota,
            per_member_quota=benefit.per_member_quota,
            usage_count=int(benefit.usage_count or 0),
            tags=tuple(benefit.tags or ()),
            featured=bool(benefit.featured),
            created_at=ensure_aware(benefit.created_at),
            updated_at=ensure_aware(benefit.updated_at),
        )


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    """Benefit plus the resolution path it was found through."""

    benefit: BenefitRecord
    origin: CatalogOrigin


@dataclass(frozen=True, slots=True)
class RedemptionRecord:
    id: UUID
    benefit_id: UUID
    benefit_title: str
    member_id: UUID
    member_name: str
    business_id: UUID
    business_name: str
    redeemed_at: datetime
    discount_amount: Decimal
    status: RedemptionStatus
    member_email: str | None = None
    association_id: UUID | None = None
    association_name: str | None = None
    original_amount: Decimal | None = None
    final_amount: Decimal | None = None

    @classmethod
    def from_model(cls, redemption: Redemption) -> "RedemptionRecord":
        return cls(
            id=redemption.id,
            benefit_id=redemption.benefit_id,
            benefit_title=redemption.benefit_title,
            member_id=redemption.member_id,
            member_name=redemption.member_name,
            member_email=redemption.member_email,
            business_id=redemption.business_id,
            business_name=redemption.business_name,
            association_id=redemption.association_id,
            association_name=redemption.association_name,
            redeemed_at=ensure_aware(redemption.redeemed_at),
            discount_amount=Decimal(redemption.discount_amount or 0),
            original_amount=Decimal(redemption.original_amount) if redemption.original_amount is not None else None,
            final_amount=Decimal(redemption.final_amount) if redemption.final_amount is not None else None,
            status=RedemptionStatus(redemption.status),
        )


@dataclass(frozen=True, slots=True)
class MemberAffiliations:
    association_id: UUID | None = None
    business_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True, slots=True)
class MemberSnapshot:
    """Denormalized member details written onto redemption records."""

    name: str
    email: str | None = None


@dataclass(frozen=True, slots=True)
class EntityProfile:
    """Name and logo of a business or association."""

    id: UUID
    name: str
    logo_url: str | None = None
    association_ids: tuple[UUID, ...] = field(default=())


__all__ = [
    "BenefitRecord",
    "CatalogEntry",
    "CatalogOrigin",
    "EntityProfile",
    "MemberAffiliations",
    "MemberSnapshot",
    "RedemptionRecord",
    "ensure_aware",
]
