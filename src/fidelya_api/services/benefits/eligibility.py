"""Deduplication, validity filtering and caller filters for catalog results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence, TypeVar
from uuid import UUID

from fidelya_api.core.settings import settings
from fidelya_api.models.benefits import BenefitState

from .records import BenefitRecord, CatalogEntry, ensure_aware

Item = TypeVar("Item", CatalogEntry, BenefitRecord)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MISSING_END_HORIZON = timedelta(days=365)


@dataclass(frozen=True, slots=True)
class CatalogFilter:
    """Optional narrowing applied after validity filtering. Hashable so it can key the cache."""

    category: str | None = None
    business_id: UUID | None = None
    featured_only: bool = False
    search_text: str | None = None
    new_only: bool = False
    expiring_within_days: int | None = None

    @property
    def is_empty(self) -> bool:
        return self == CatalogFilter()


def _benefit_of(item: CatalogEntry | BenefitRecord) -> BenefitRecord:
    return item.benefit if isinstance(item, CatalogEntry) else item


def coerce_instant(value: object) -> datetime | None:
    """Best-effort conversion of legacy timestamp values; ``None`` when unusable."""

    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, str) and value.strip():
        try:
            return ensure_aware(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def merge_benefits(items: Iterable[Item]) -> list[Item]:
    """Keep the first occurrence of each benefit id, preserving order."""

    seen: set[UUID] = set()
    merged: list[Item] = []
    for item in items:
        benefit_id = _benefit_of(item).id
        if benefit_id in seen:
            continue
        seen.add(benefit_id)
        merged.append(item)
    return merged


def is_currently_valid(benefit: BenefitRecord, now: datetime) -> bool:
    if benefit.state != BenefitState.ACTIVE:
        return False

    # Legacy rows may lack a window; treat them as open-ended.
    ends_at = coerce_instant(benefit.ends_at) or now + MISSING_END_HORIZON
    starts_at = coerce_instant(benefit.starts_at) or EPOCH
    if ends_at <= now or starts_at > now:
        return False

    if benefit.global_quota is not None and benefit.usage_count >= benefit.global_quota:
        return False
    return True


def _sort_key(item: CatalogEntry | BenefitRecord) -> tuple[int, float]:
    benefit = _benefit_of(item)
    created_at = coerce_instant(benefit.created_at) or EPOCH
    return (0 if benefit.featured else 1, -created_at.timestamp())


def filter_valid(
    items: Iterable[Item],
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[Item]:
    """Drop benefits that cannot be redeemed right now; featured first, newest next."""

    reference = ensure_aware(now) or datetime.now(timezone.utc)
    valid = [item for item in items if is_currently_valid(_benefit_of(item), reference)]
    valid.sort(key=_sort_key)
    if limit is not None:
        valid = valid[: max(limit, 0)]
    return valid


def _matches_search(benefit: BenefitRecord, needle: str) -> bool:
    haystacks: Sequence[str | None] = (
        benefit.title,
        benefit.description,
        benefit.business_name,
        benefit.category,
        *benefit.tags,
    )
    return any(needle in value.lower() for value in haystacks if value)


def apply_catalog_filter(
    items: Iterable[Item],
    catalog_filter: CatalogFilter | None,
    *,
    now: datetime | None = None,
) -> list[Item]:
    """Apply caller-supplied narrowing options. Order is preserved."""

    items = list(items)
    if catalog_filter is None or catalog_filter.is_empty:
        return items

    reference = ensure_aware(now) or datetime.now(timezone.utc)
    needle = (catalog_filter.search_text or "").strip().lower()
    new_since = reference - timedelta(days=settings.new_benefit_window_days)

    selected: list[Item] = []
    for item in items:
        benefit = _benefit_of(item)
        if catalog_filter.category and benefit.category != catalog_filter.category:
            continue
        if catalog_filter.business_id and benefit.business_id != catalog_filter.business_id:
            continue
        if catalog_filter.featured_only and not benefit.featured:
            continue
        if needle and not _matches_search(benefit, needle):
            continue
        if catalog_filter.new_only:
            created_at = coerce_instant(benefit.created_at)
            if created_at is None or created_at < new_since:
                continue
        if catalog_filter.expiring_within_days is not None:
            ends_at = coerce_instant(benefit.ends_at)
            horizon = reference + timedelta(days=catalog_filter.expiring_within_days)
            if ends_at is None or not (reference < ends_at <= horizon):
                continue
        selected.append(item)
    return selected


__all__ = [
    "CatalogFilter",
    "apply_catalog_filter",
    "coerce_instant",
    "filter_valid",
    "is_currently_valid",
    "merge_benefits",
]
