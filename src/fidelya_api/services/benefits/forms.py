"""Create/update payloads for benefits and their validation rules."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from fidelya_api.core.settings import settings
from fidelya_api.models.benefits import AccessMode, DiscountKind

from .records import ensure_aware


class OwnerRole(str, Enum):
    """Actor creating a benefit."""

    BUSINESS = "business"
    ASSOCIATION = "association"


@dataclass(slots=True)
class BenefitForm:
    title: str | None = None
    description: str | None = None
    category: str | None = None
    discount_kind: DiscountKind | None = None
    discount_value: Decimal | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    conditions: str | None = None
    access_mode: AccessMode | None = None
    association_ids: list[UUID] = field(default_factory=list)
    business_id: UUID | None = None
    global_quota: int | None = None
    per_member_quota: int | None = None
    tags: list[str] = field(default_factory=list)
    featured: bool = False


@dataclass(slots=True)
class BenefitPatch:
    """Partial update. ``None`` means "leave unchanged"."""

    title: str | None = None
    description: str | None = None
    category: str | None = None
    discount_kind: DiscountKind | None = None
    discount_value: Decimal | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    conditions: str | None = None
    access_mode: AccessMode | None = None
    association_ids: list[UUID] | None = None
    global_quota: int | None = None
    per_member_quota: int | None = None
    tags: list[str] | None = None
    featured: bool | None = None

    def provided(self) -> dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self) if getattr(self, item.name) is not None}


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _discount_errors(kind: DiscountKind | None, value: Decimal | None) -> list[str]:
    if value is None:
        return []
    amount = Decimal(str(value))
    if kind == DiscountKind.PERCENTAGE and (amount <= 0 or amount > 100):
        return ["Percentage discount must be between 1 and 100"]
    if kind == DiscountKind.FIXED_AMOUNT and amount <= 0:
        return ["Fixed amount discount must be greater than 0"]
    return []


def _quota_errors(global_quota: int | None, per_member_quota: int | None) -> list[str]:
    errors: list[str] = []
    if per_member_quota is not None and per_member_quota < 0:
        errors.append("Per-member limit cannot be negative")
    if global_quota is not None and global_quota < 0:
        errors.append("Total limit cannot be negative")
    if (
        global_quota is not None
        and per_member_quota is not None
        and global_quota > 0
        and per_member_quota > global_quota
    ):
        errors.append("Per-member limit cannot exceed the total limit")
    return errors


def _window_errors(starts_at: datetime | None, ends_at: datetime | None) -> list[str]:
    if starts_at is None or ends_at is None:
        return []
    if ensure_aware(ends_at) <= ensure_aware(starts_at):
        return ["End date must be after the start date"]
    return []


def validate_benefit_form(form: BenefitForm, owner_role: OwnerRole, *, now: datetime | None = None) -> list[str]:
    """Return every violated rule of a create payload; empty when valid."""

    reference = ensure_aware(now) or datetime.now(timezone.utc)
    errors: list[str] = []

    if _blank(form.title):
        errors.append("Title is required")
    if _blank(form.description):
        errors.append("Description is required")
    if form.discount_kind is None:
        errors.append("Discount kind is required")
    if form.discount_value is None:
        errors.append("Discount value is required")
    errors.extend(_discount_errors(form.discount_kind, form.discount_value))

    if form.starts_at is None:
        errors.append("Start date is required")
    if form.ends_at is None:
        errors.append("End date is required")
    errors.extend(_window_errors(form.starts_at, form.ends_at))
    if form.starts_at is not None:
        backdate_limit = reference - timedelta(days=settings.benefit_backdate_limit_days)
        if ensure_aware(form.starts_at) < backdate_limit:
            errors.append("Start date cannot be more than a month in the past")

    if _blank(form.category):
        errors.append("Category is required")

    errors.extend(_quota_errors(form.global_quota, form.per_member_quota))

    if owner_role == OwnerRole.ASSOCIATION and form.business_id is None:
        errors.append("Associations must specify the business offering the benefit")
    return errors


def validate_benefit_patch(patch: BenefitPatch, *, current_kind: DiscountKind | None = None) -> list[str]:
    """Return every violated rule of a partial update; empty when valid."""

    errors: list[str] = []
    if patch.title is not None and _blank(patch.title):
        errors.append("Title cannot be empty")
    if patch.description is not None and _blank(patch.description):
        errors.append("Description cannot be empty")
    if patch.category is not None and _blank(patch.category):
        errors.append("Category cannot be empty")
    errors.extend(_discount_errors(patch.discount_kind or current_kind, patch.discount_value))
    errors.extend(_window_errors(patch.starts_at, patch.ends_at))
    errors.extend(_quota_errors(patch.global_quota, patch.per_member_quota))
    if patch.access_mode == AccessMode.ASSOCIATION and patch.association_ids is not None and not patch.association_ids:
        errors.append("Association benefits must be granted to at least one association")
    return errors


__all__ = [
    "BenefitForm",
    "BenefitPatch",
    "OwnerRole",
    "validate_benefit_form",
    "validate_benefit_patch",
]
