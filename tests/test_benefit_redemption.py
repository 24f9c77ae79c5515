import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import NOW, seed_association, seed_benefit, seed_business, seed_member
from fidelya_api.models import Benefit, BenefitState, Business, DiscountKind, Redemption
from fidelya_api.models.benefits import AccessMode
from fidelya_api.observability.benefits import get_benefit_store
from fidelya_api.services.benefits import (
    AccessDeniedError,
    BenefitExpiredError,
    BenefitNotActiveError,
    BenefitNotFoundError,
    BenefitNotYetStartedError,
    BenefitService,
    MemberSnapshot,
    PerMemberQuotaExceededError,
    QuotaExhaustedError,
    compute_discount,
)


def _snapshot(name: str = "Ana Perez") -> MemberSnapshot:
    return MemberSnapshot(name=name, email="ana@example.com")


async def _usage(session_factory, benefit_id) -> tuple[int, BenefitState, int]:
    async with session_factory() as session:
        benefit = await session.get(Benefit, benefit_id)
        redemptions = (
            await session.execute(select(func.count(Redemption.id)).where(Redemption.benefit_id == benefit_id))
        ).scalar_one()
        return benefit.usage_count, BenefitState(benefit.state), redemptions


def test_compute_discount_by_kind() -> None:
    assert compute_discount(DiscountKind.PERCENTAGE, Decimal("20"), Decimal("100")) == Decimal("20.00")
    assert compute_discount(DiscountKind.FIXED_AMOUNT, Decimal("50"), Decimal("30")) == Decimal("30.00")
    assert compute_discount(DiscountKind.FREE_ITEM, Decimal("0"), Decimal("75")) == Decimal("75.00")


def test_compute_discount_edge_cases() -> None:
    assert compute_discount(DiscountKind.PERCENTAGE, Decimal("15"), None) == Decimal("0.00")
    assert compute_discount(DiscountKind.PERCENTAGE, Decimal("12.5"), Decimal("10.10")) == Decimal("1.26")
    assert compute_discount(DiscountKind.FIXED_AMOUNT, Decimal("5"), Decimal("30")) == Decimal("5.00")
    assert compute_discount("voucher", Decimal("5"), Decimal("30")) == Decimal("0.00")


@pytest.mark.asyncio
async def test_redeem_records_usage_and_amounts(session_factory, cache, benefit_graph) -> None:
    benefit_id = await seed_benefit(
        session_factory,
        benefit_graph.business_id,
        access_mode=AccessMode.ASSOCIATION,
        association_ids=(benefit_graph.association_id,),
        discount_value=Decimal("20"),
    )
    service = BenefitService(session_factory, cache)

    redemption = await service.redeem(
        benefit_id,
        benefit_graph.member_id,
        _snapshot(),
        benefit_graph.business_id,
        original_amount=Decimal("100"),
        now=NOW,
    )

    assert redemption.discount_amount == Decimal("20.00")
    assert redemption.final_amount == Decimal("80.00")
    assert redemption.association_id == benefit_graph.association_id
    assert redemption.association_name == "Asociacion Norte"
    assert redemption.business_name == "Cafe Central"
    assert await _usage(session_factory, benefit_id) == (1, BenefitState.ACTIVE, 1)
    assert get_benefit_store().snapshot().redemptions == {"used": 1}


@pytest.mark.asyncio
async def test_concurrent_redemptions_are_counted_exactly_once(session_factory, cache, benefit_graph) -> None:
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id)
    member_ids = [
        await seed_member(session_factory, f"Socio {index}", association_id=benefit_graph.association_id)
        for index in range(10)
    ]
    service = BenefitService(session_factory, cache)

    results = await asyncio.gather(
        *(
            service.redeem(benefit_id, member_id, _snapshot(f"Socio {index}"), benefit_graph.business_id, now=NOW)
            for index, member_id in enumerate(member_ids)
        )
    )

    assert len({redemption.id for redemption in results}) == 10
    assert await _usage(session_factory, benefit_id) == (10, BenefitState.ACTIVE, 10)


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_exceed_global_quota(session_factory, cache, benefit_graph) -> None:
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id, global_quota=3)
    member_ids = [
        await seed_member(session_factory, f"Socio {index}", association_id=benefit_graph.association_id)
        for index in range(8)
    ]
    service = BenefitService(session_factory, cache)

    results = await asyncio.gather(
        *(
            service.redeem(benefit_id, member_id, _snapshot(), benefit_graph.business_id, now=NOW)
            for member_id in member_ids
        ),
        return_exceptions=True,
    )

    succeeded = [result for result in results if not isinstance(result, Exception)]
    failed = [result for result in results if isinstance(result, Exception)]
    assert len(succeeded) == 3
    assert all(isinstance(error, QuotaExhaustedError) for error in failed)
    assert await _usage(session_factory, benefit_id) == (3, BenefitState.EXHAUSTED, 3)


@pytest.mark.asyncio
async def test_single_use_benefit_is_exhausted_for_the_next_member(session_factory, cache, benefit_graph) -> None:
    b1 = await seed_benefit(session_factory, benefit_graph.business_id, title="B1", global_quota=1)
    m1 = benefit_graph.member_id
    m2 = await seed_member(session_factory, "Bruno Diaz", association_id=benefit_graph.association_id)
    service = BenefitService(session_factory, cache)

    await service.redeem(b1, m1, _snapshot(), benefit_graph.business_id, now=NOW)

    with pytest.raises(QuotaExhaustedError):
        await service.redeem(b1, m2, _snapshot("Bruno Diaz"), benefit_graph.business_id, now=NOW)

    assert await _usage(session_factory, b1) == (1, BenefitState.EXHAUSTED, 1)
    async with session_factory() as session:
        business = await session.get(Business, benefit_graph.business_id)
        assert business.active_benefit_count == 0


@pytest.mark.asyncio
async def test_per_member_quota_is_enforced(session_factory, cache, benefit_graph) -> None:
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id, per_member_quota=2)
    other_member = await seed_member(session_factory, "Carla Gomez", association_id=benefit_graph.association_id)
    service = BenefitService(session_factory, cache)

    for _ in range(2):
        await service.redeem(benefit_id, benefit_graph.member_id, _snapshot(), benefit_graph.business_id, now=NOW)

    with pytest.raises(PerMemberQuotaExceededError):
        await service.redeem(benefit_id, benefit_graph.member_id, _snapshot(), benefit_graph.business_id, now=NOW)

    await service.redeem(benefit_id, other_member, _snapshot("Carla Gomez"), benefit_graph.business_id, now=NOW)
    assert await _usage(session_factory, benefit_id) == (3, BenefitState.ACTIVE, 3)


@pytest.mark.asyncio
async def test_association_benefit_requires_membership(session_factory, cache, benefit_graph) -> None:
    other_association = await seed_association(session_factory, "Asociacion Sur")
    outsider = await seed_member(session_factory, "Diego Luna", association_id=other_association)
    benefit_id = await seed_benefit(
        session_factory,
        benefit_graph.business_id,
        access_mode=AccessMode.ASSOCIATION,
        association_ids=(benefit_graph.association_id,),
    )
    service = BenefitService(session_factory, cache)

    with pytest.raises(AccessDeniedError):
        await service.redeem(benefit_id, outsider, _snapshot("Diego Luna"), benefit_graph.business_id, now=NOW)

    assert await _usage(session_factory, benefit_id) == (0, BenefitState.ACTIVE, 0)
    assert get_benefit_store().snapshot().redemptions == {"access_denied": 1}


@pytest.mark.asyncio
async def test_direct_benefit_allows_affiliated_members(session_factory, cache) -> None:
    business_id = await seed_business(session_factory, "Gimnasio Fuerte")
    affiliated = await seed_member(session_factory, "Elena Ruiz", business_ids=(business_id,))
    stranger = await seed_member(session_factory, "Fabian Soto")
    benefit_id = await seed_benefit(session_factory, business_id, access_mode=AccessMode.DIRECT)
    service = BenefitService(session_factory, cache)

    await service.redeem(benefit_id, affiliated, _snapshot("Elena Ruiz"), business_id, now=NOW)
    with pytest.raises(AccessDeniedError):
        await service.redeem(benefit_id, stranger, _snapshot("Fabian Soto"), business_id, now=NOW)


@pytest.mark.asyncio
async def test_redeem_at_another_business_is_denied(session_factory, cache, benefit_graph) -> None:
    other_business = await seed_business(session_factory, "Optica Vista")
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id)
    service = BenefitService(session_factory, cache)

    with pytest.raises(AccessDeniedError):
        await service.redeem(benefit_id, benefit_graph.member_id, _snapshot(), other_business, now=NOW)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "error"),
    [
        ({"state": BenefitState.INACTIVE}, BenefitNotActiveError),
        ({"state": BenefitState.EXPIRED}, BenefitNotActiveError),
        ({"ends_at": NOW - timedelta(minutes=1)}, BenefitExpiredError),
        ({"starts_at": NOW + timedelta(days=1)}, BenefitNotYetStartedError),
        ({"global_quota": 2, "usage_count": 2}, QuotaExhaustedError),
    ],
)
async def test_redeem_rejects_unredeemable_benefits(session_factory, cache, benefit_graph, overrides, error) -> None:
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id, **overrides)
    service = BenefitService(session_factory, cache)

    with pytest.raises(error):
        await service.redeem(benefit_id, benefit_graph.member_id, _snapshot(), benefit_graph.business_id, now=NOW)

    usage_count, _, redemptions = await _usage(session_factory, benefit_id)
    assert redemptions == 0
    assert usage_count == overrides.get("usage_count", 0)


@pytest.mark.asyncio
async def test_redeem_unknown_benefit(session_factory, cache, benefit_graph) -> None:
    service = BenefitService(session_factory, cache)

    with pytest.raises(BenefitNotFoundError):
        await service.redeem(
            benefit_graph.association_id,
            benefit_graph.member_id,
            _snapshot(),
            benefit_graph.business_id,
            now=NOW,
        )
