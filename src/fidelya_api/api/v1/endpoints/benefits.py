"""API endpoints for benefit browsing, administration and redemption."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from http import HTTPStatus
from typing import Any, List, NoReturn, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import AwareDatetime, BaseModel, Field

from fidelya_api.api.dependencies.benefits import get_benefit_service
from fidelya_api.api.dependencies.security import require_internal_api_key
from fidelya_api.models.benefits import AccessMode, DiscountKind
from fidelya_api.observability.benefits import get_benefit_store
from fidelya_api.services.benefits import (
    AccessDeniedError,
    BenefitEngineError,
    BenefitForm,
    BenefitNotFoundError,
    BenefitPatch,
    BenefitRecord,
    BenefitService,
    BenefitStats,
    BenefitValidationError,
    CatalogEntry,
    CatalogFilter,
    MemberSnapshot,
    OwnerRole,
    RedemptionRecord,
    StatsFilter,
    StoreUnavailableError,
)


router = APIRouter(prefix="/benefits", tags=["benefits"])


class BenefitResponse(BaseModel):
    id: UUID
    title: str
    description: str
    category: str
    conditions: Optional[str]
    discountKind: str
    discountValue: float
    startsAt: Optional[datetime]
    endsAt: Optional[datetime]
    state: str
    accessMode: str
    businessId: UUID
    businessName: str
    businessLogoUrl: Optional[str]
    ownerAssociationId: Optional[UUID]
    ownerAssociationName: Optional[str]
    associationIds: List[UUID]
    globalQuota: Optional[int]
    perMemberQuota: Optional[int]
    usageCount: int
    tags: List[str]
    featured: bool
    createdAt: Optional[datetime]
    updatedAt: Optional[datetime]


class CatalogEntryResponse(BenefitResponse):
    origin: str


class BenefitCreateRequest(BaseModel):
    ownerId: UUID = Field(..., description="Business or association creating the benefit")
    ownerRole: OwnerRole
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    discountKind: Optional[DiscountKind] = None
    discountValue: Optional[Decimal] = None
    startsAt: Optional[AwareDatetime] = None
    endsAt: Optional[AwareDatetime] = None
    conditions: Optional[str] = None
    accessMode: Optional[AccessMode] = None
    associationIds: List[UUID] = Field(default_factory=list)
    businessId: Optional[UUID] = Field(None, description="Required when an association creates the benefit")
    globalQuota: Optional[int] = None
    perMemberQuota: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    featured: bool = False


class BenefitCreateResponse(BaseModel):
    id: UUID


class BenefitUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    discountKind: Optional[DiscountKind] = None
    discountValue: Optional[Decimal] = None
    startsAt: Optional[AwareDatetime] = None
    endsAt: Optional[AwareDatetime] = None
    conditions: Optional[str] = None
    accessMode: Optional[AccessMode] = None
    associationIds: Optional[List[UUID]] = None
    globalQuota: Optional[int] = None
    perMemberQuota: Optional[int] = None
    tags: Optional[List[str]] = None
    featured: Optional[bool] = None


class RedeemRequest(BaseModel):
    memberId: UUID
    memberName: str = Field(..., min_length=1)
    memberEmail: Optional[str] = None
    businessId: UUID
    associationId: Optional[UUID] = None
    originalAmount: Optional[Decimal] = Field(None, ge=0, description="Purchase amount before discount")


class RedemptionResponse(BaseModel):
    id: UUID
    benefitId: UUID
    benefitTitle: str
    memberId: UUID
    memberName: str
    memberEmail: Optional[str]
    businessId: UUID
    businessName: str
    associationId: Optional[UUID]
    associationName: Optional[str]
    redeemedAt: datetime
    discountAmount: float
    originalAmount: Optional[float]
    finalAmount: Optional[float]
    status: str


class AccessCheckResponse(BaseModel):
    benefitId: UUID
    hasAccess: bool


class AssociationSummaryResponse(BaseModel):
    id: UUID
    name: str
    logoUrl: Optional[str]


class MonthlyUsageResponse(BaseModel):
    month: str
    uses: int
    savings: float


class BenefitUsageResponse(BaseModel):
    benefitId: UUID
    title: str
    uses: int
    savings: float


class CategoryUsageResponse(BaseModel):
    category: str
    benefits: int
    uses: int


class BusinessUsageResponse(BaseModel):
    businessId: UUID
    businessName: str
    benefits: int
    uses: int


class BenefitStatsResponse(BaseModel):
    totalBenefits: int
    activeBenefits: int
    usedCount: int
    expiredCount: int
    totalSavings: float
    savingsThisMonth: float
    usageByMonth: List[MonthlyUsageResponse]
    topBenefits: List[BenefitUsageResponse]
    byCategory: List[CategoryUsageResponse]
    byBusiness: List[BusinessUsageResponse]


class SweepResponse(BaseModel):
    expired: int
    benefitIds: List[UUID]
    businessIds: List[UUID]


def _raise_http(error: BenefitEngineError) -> NoReturn:
    if isinstance(error, BenefitNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, BenefitValidationError):
        status_code = HTTPStatus.UNPROCESSABLE_ENTITY
    elif isinstance(error, AccessDeniedError):
        status_code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, StoreUnavailableError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_409_CONFLICT

    detail: dict[str, Any] = {"code": error.code, "message": error.message}
    if isinstance(error, BenefitValidationError):
        detail["errors"] = error.errors
    raise HTTPException(status_code=status_code, detail=detail) from error


def _serialize_benefit(benefit: BenefitRecord) -> BenefitResponse:
    return BenefitResponse(**_benefit_fields(benefit))


def _benefit_fields(benefit: BenefitRecord) -> dict[str, Any]:
    return {
        "id": benefit.id,
        "title": benefit.title,
        "description": benefit.description,
        "category": benefit.category,
        "conditions": benefit.conditions,
        "discountKind": benefit.discount_kind.value,
        "discountValue": float(benefit.discount_value),
        "startsAt": benefit.starts_at if isinstance(benefit.starts_at, datetime) else None,
        "endsAt": benefit.ends_at if isinstance(benefit.ends_at, datetime) else None,
        "state": benefit.state.value,
        "accessMode": benefit.access_mode.value,
        "businessId": benefit.business_id,
        "businessName": benefit.business_name,
        "businessLogoUrl": benefit.business_logo_url,
        "ownerAssociationId": benefit.owner_association_id,
        "ownerAssociationName": benefit.owner_association_name,
        "associationIds": list(benefit.association_ids),
        "globalQuota": benefit.global_quota,
        "perMemberQuota": benefit.per_member_quota,
        "usageCount": benefit.usage_count,
        "tags": list(benefit.tags),
        "featured": benefit.featured,
        "createdAt": benefit.created_at,
        "updatedAt": benefit.updated_at,
    }


def _serialize_entry(entry: CatalogEntry) -> CatalogEntryResponse:
    return CatalogEntryResponse(origin=entry.origin.value, **_benefit_fields(entry.benefit))


def _serialize_redemption(redemption: RedemptionRecord) -> RedemptionResponse:
    return RedemptionResponse(
        id=redemption.id,
        benefitId=redemption.benefit_id,
        benefitTitle=redemption.benefit_title,
        memberId=redemption.member_id,
        memberName=redemption.member_name,
        memberEmail=redemption.member_email,
        businessId=redemption.business_id,
        businessName=redemption.business_name,
        associationId=redemption.association_id,
        associationName=redemption.association_name,
        redeemedAt=redemption.redeemed_at,
        discountAmount=float(redemption.discount_amount),
        originalAmount=float(redemption.original_amount) if redemption.original_amount is not None else None,
        finalAmount=float(redemption.final_amount) if redemption.final_amount is not None else None,
        status=redemption.status.value,
    )


def _serialize_stats(stats: BenefitStats) -> BenefitStatsResponse:
    return BenefitStatsResponse(
        totalBenefits=stats.total_benefits,
        activeBenefits=stats.active_benefits,
        usedCount=stats.used_count,
        expiredCount=stats.expired_count,
        totalSavings=float(stats.total_savings),
        savingsThisMonth=float(stats.savings_this_month),
        usageByMonth=[
            MonthlyUsageResponse(month=item.month, uses=item.uses, savings=float(item.savings))
            for item in stats.usage_by_month
        ],
        topBenefits=[
            BenefitUsageResponse(benefitId=item.benefit_id, title=item.title, uses=item.uses, savings=float(item.savings))
            for item in stats.top_benefits
        ],
        byCategory=[
            CategoryUsageResponse(category=item.category, benefits=item.benefits, uses=item.uses)
            for item in stats.by_category
        ],
        byBusiness=[
            BusinessUsageResponse(
                businessId=item.business_id,
                businessName=item.business_name,
                benefits=item.benefits,
                uses=item.uses,
            )
            for item in stats.by_business
        ],
    )


@router.get("/available", response_model=List[CatalogEntryResponse])
async def list_available_benefits(
    member_id: UUID = Query(..., alias="memberId"),
    association_id: UUID | None = Query(None, alias="associationId"),
    category: str | None = Query(None),
    business_id: UUID | None = Query(None, alias="businessId"),
    featured_only: bool = Query(False, alias="featuredOnly"),
    search: str | None = Query(None, description="Matches title, description, business, category and tags"),
    new_only: bool = Query(False, alias="newOnly"),
    expiring_within_days: int | None = Query(None, alias="expiringWithinDays", ge=0),
    limit: int = Query(50, ge=1, le=200),
    service: BenefitService = Depends(get_benefit_service),
) -> List[CatalogEntryResponse]:
    """Benefits the member can redeem right now."""

    catalog_filter = CatalogFilter(
        category=category,
        business_id=business_id,
        featured_only=featured_only,
        search_text=search,
        new_only=new_only,
        expiring_within_days=expiring_within_days,
    )
    try:
        entries = await service.list_available_benefits(member_id, association_id, catalog_filter, limit)
    except BenefitEngineError as error:
        _raise_http(error)
    return [_serialize_entry(entry) for entry in entries]


@router.get("/categories", response_model=List[str])
async def list_benefit_categories(service: BenefitService = Depends(get_benefit_service)) -> List[str]:
    try:
        return await service.list_categories()
    except BenefitEngineError as error:
        _raise_http(error)


@router.get("/stats", response_model=BenefitStatsResponse)
async def get_benefit_stats(
    business_id: UUID | None = Query(None, alias="businessId"),
    association_id: UUID | None = Query(None, alias="associationId"),
    member_id: UUID | None = Query(None, alias="memberId"),
    since: AwareDatetime | None = Query(None),
    until: AwareDatetime | None = Query(None),
    service: BenefitService = Depends(get_benefit_service),
) -> BenefitStatsResponse:
    stats_filter = StatsFilter(
        business_id=business_id,
        association_id=association_id,
        member_id=member_id,
        since=since,
        until=until,
    )
    try:
        stats = await service.compute_stats(stats_filter)
    except BenefitEngineError as error:
        _raise_http(error)
    return _serialize_stats(stats)


@router.get("/observability")
async def get_benefit_observability() -> dict[str, object]:
    return get_benefit_store().snapshot().as_dict()


@router.post(
    "/sweep",
    response_model=SweepResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def sweep_expired_benefits(service: BenefitService = Depends(get_benefit_service)) -> SweepResponse:
    """Expire benefits whose validity window has closed."""

    try:
        summary = await service.sweep_expired_benefits()
    except BenefitEngineError as error:
        _raise_http(error)
    return SweepResponse(expired=summary.expired, benefitIds=summary.benefit_ids, businessIds=summary.business_ids)


@router.post(
    "/counters/sync",
    dependencies=[Depends(require_internal_api_key)],
)
async def sync_business_counters(service: BenefitService = Depends(get_benefit_service)) -> dict[str, int]:
    try:
        synced = await service.sync_business_benefit_counters()
    except BenefitEngineError as error:
        _raise_http(error)
    return {"businessesSynced": synced}


@router.get("/members/{member_id}/redemptions", response_model=List[RedemptionResponse])
async def list_member_redemptions(
    member_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    service: BenefitService = Depends(get_benefit_service),
) -> List[RedemptionResponse]:
    try:
        history = await service.get_redemption_history(member_id, limit)
    except BenefitEngineError as error:
        _raise_http(error)
    return [_serialize_redemption(redemption) for redemption in history]


@router.get("/businesses/{business_id}", response_model=List[BenefitResponse])
async def list_business_benefits(
    business_id: UUID,
    service: BenefitService = Depends(get_benefit_service),
) -> List[BenefitResponse]:
    try:
        benefits = await service.list_business_benefits(business_id)
    except BenefitEngineError as error:
        _raise_http(error)
    return [_serialize_benefit(benefit) for benefit in benefits]


@router.get("/businesses/{business_id}/associations", response_model=List[AssociationSummaryResponse])
async def list_business_associations(
    business_id: UUID,
    service: BenefitService = Depends(get_benefit_service),
) -> List[AssociationSummaryResponse]:
    try:
        profiles = await service.list_business_associations(business_id)
    except BenefitEngineError as error:
        _raise_http(error)
    return [AssociationSummaryResponse(id=profile.id, name=profile.name, logoUrl=profile.logo_url) for profile in profiles]


@router.get("/associations/{association_id}", response_model=List[BenefitResponse])
async def list_association_benefits(
    association_id: UUID,
    service: BenefitService = Depends(get_benefit_service),
) -> List[BenefitResponse]:
    try:
        benefits = await service.list_association_benefits(association_id)
    except BenefitEngineError as error:
        _raise_http(error)
    return [_serialize_benefit(benefit) for benefit in benefits]


@router.post("", response_model=BenefitCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_benefit(
    request: BenefitCreateRequest,
    service: BenefitService = Depends(get_benefit_service),
) -> BenefitCreateResponse:
    form = BenefitForm(
        title=request.title,
        description=request.description,
        category=request.category,
        discount_kind=request.discountKind,
        discount_value=request.discountValue,
        starts_at=request.startsAt,
        ends_at=request.endsAt,
        conditions=request.conditions,
        access_mode=request.accessMode,
        association_ids=list(request.associationIds),
        business_id=request.businessId,
        global_quota=request.globalQuota,
        per_member_quota=request.perMemberQuota,
        tags=list(request.tags),
        featured=request.featured,
    )
    try:
        benefit_id = await service.create_benefit(form, request.ownerId, request.ownerRole)
    except BenefitEngineError as error:
        _raise_http(error)
    return BenefitCreateResponse(id=benefit_id)


@router.get("/{benefit_id}", response_model=BenefitResponse)
async def get_benefit(
    benefit_id: UUID,
    service: BenefitService = Depends(get_benefit_service),
) -> BenefitResponse:
    try:
        benefit = await service.get_benefit(benefit_id)
    except BenefitEngineError as error:
        _raise_http(error)
    return _serialize_benefit(benefit)


@router.patch("/{benefit_id}", status_code=status.HTTP_204_NO_CONTENT)
async def update_benefit(
    benefit_id: UUID,
    request: BenefitUpdateRequest,
    service: BenefitService = Depends(get_benefit_service),
) -> Response:
    patch = BenefitPatch(
        title=request.title,
        description=request.description,
        category=request.category,
        discount_kind=request.discountKind,
        discount_value=request.discountValue,
        starts_at=request.startsAt,
        ends_at=request.endsAt,
        conditions=request.conditions,
        access_mode=request.accessMode,
        association_ids=request.associationIds,
        global_quota=request.globalQuota,
        per_member_quota=request.perMemberQuota,
        tags=request.tags,
        featured=request.featured,
    )
    try:
        await service.update_benefit(benefit_id, patch)
    except BenefitEngineError as error:
        _raise_http(error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{benefit_id}/deactivate", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_benefit(
    benefit_id: UUID,
    service: BenefitService = Depends(get_benefit_service),
) -> Response:
    try:
        await service.deactivate_benefit(benefit_id)
    except BenefitEngineError as error:
        _raise_http(error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{benefit_id}/redeem", response_model=RedemptionResponse, status_code=status.HTTP_201_CREATED)
async def redeem_benefit(
    benefit_id: UUID,
    request: RedeemRequest,
    service: BenefitService = Depends(get_benefit_service),
) -> RedemptionResponse:
    """Record one use of a benefit by a member at the owning business."""

    try:
        redemption = await service.redeem(
            benefit_id,
            request.memberId,
            MemberSnapshot(name=request.memberName, email=request.memberEmail),
            request.businessId,
            request.associationId,
            request.originalAmount,
        )
    except BenefitEngineError as error:
        _raise_http(error)
    return _serialize_redemption(redemption)


@router.get("/{benefit_id}/access", response_model=AccessCheckResponse)
async def check_benefit_access(
    benefit_id: UUID,
    association_ids: Optional[List[UUID]] = Query(None, alias="associationId"),
    service: BenefitService = Depends(get_benefit_service),
) -> AccessCheckResponse:
    try:
        has_access = await service.check_member_access(benefit_id, association_ids or [])
    except BenefitEngineError as error:
        _raise_http(error)
    return AccessCheckResponse(benefitId=benefit_id, hasAccess=has_access)


@router.get("/{benefit_id}/associations/{association_id}/redemptions", response_model=List[RedemptionResponse])
async def list_association_redemptions(
    benefit_id: UUID,
    association_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    service: BenefitService = Depends(get_benefit_service),
) -> List[RedemptionResponse]:
    try:
        redemptions = await service.list_association_redemptions(benefit_id, association_id, limit)
    except BenefitEngineError as error:
        _raise_http(error)
    return [_serialize_redemption(redemption) for redemption in redemptions]
