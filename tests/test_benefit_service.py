from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from conftest import NOW, seed_association, seed_benefit, seed_business, seed_member
from fidelya_api.models import Benefit, BenefitAssociationGrant, BenefitState, Business, DiscountKind
from fidelya_api.models.benefits import AccessMode
from fidelya_api.observability.benefits import get_benefit_store
from fidelya_api.services.benefits import (
    BenefitForm,
    BenefitNotFoundError,
    BenefitPatch,
    BenefitService,
    BenefitValidationError,
    MemberSnapshot,
    OwnerRole,
    StatsFilter,
)


def _form(**overrides) -> BenefitForm:
    values = {
        "title": "Cafe con medialuna",
        "description": "Desayuno completo con descuento",
        "category": "gastronomia",
        "discount_kind": DiscountKind.PERCENTAGE,
        "discount_value": Decimal("25"),
        "starts_at": NOW - timedelta(hours=1),
        "ends_at": NOW + timedelta(days=14),
        "tags": ["desayuno"],
    }
    values.update(overrides)
    return BenefitForm(**values)


@pytest.mark.asyncio
async def test_create_reports_every_violation(session_factory, cache) -> None:
    business_id = await seed_business(session_factory)
    service = BenefitService(session_factory, cache)
    form = BenefitForm(
        title="  ",
        discount_kind=DiscountKind.PERCENTAGE,
        discount_value=Decimal("150"),
        starts_at=NOW - timedelta(days=60),
        ends_at=NOW - timedelta(days=61),
        global_quota=2,
        per_member_quota=5,
    )

    with pytest.raises(BenefitValidationError) as excinfo:
        await service.create_benefit(form, business_id, OwnerRole.BUSINESS, now=NOW)

    assert excinfo.value.errors == [
        "Title is required",
        "Description is required",
        "Percentage discount must be between 1 and 100",
        "End date must be after the start date",
        "Start date cannot be more than a month in the past",
        "Category is required",
        "Per-member limit cannot exceed the total limit",
    ]


@pytest.mark.asyncio
async def test_business_create_grants_linked_associations(session_factory, cache, benefit_graph) -> None:
    service = BenefitService(session_factory, cache)

    benefit_id = await service.create_benefit(
        _form(access_mode=AccessMode.PUBLIC, global_quota=0),
        benefit_graph.business_id,
        OwnerRole.BUSINESS,
        now=NOW,
    )

    benefit = await service.get_benefit(benefit_id)
    assert benefit.access_mode == AccessMode.ASSOCIATION
    assert benefit.association_ids == (benefit_graph.association_id,)
    assert benefit.business_name == "Cafe Central"
    assert benefit.business_logo_url == "https://cdn.example.com/cafe-central.png"
    assert benefit.global_quota is None
    assert benefit.usage_count == 0
    assert benefit.state == BenefitState.ACTIVE

    async with session_factory() as session:
        business = await session.get(Business, benefit_graph.business_id)
        assert business.active_benefit_count == 1


@pytest.mark.asyncio
async def test_business_without_links_creates_public_benefit(session_factory, cache) -> None:
    business_id = await seed_business(session_factory, "Kiosco Sol")
    service = BenefitService(session_factory, cache)

    benefit_id = await service.create_benefit(_form(), business_id, OwnerRole.BUSINESS, now=NOW)

    benefit = await service.get_benefit(benefit_id)
    assert benefit.access_mode == AccessMode.PUBLIC
    assert benefit.association_ids == ()


@pytest.mark.asyncio
async def test_unknown_business_owner_is_rejected(session_factory, cache) -> None:
    service = BenefitService(session_factory, cache)

    with pytest.raises(BenefitValidationError) as excinfo:
        await service.create_benefit(_form(), uuid4(), OwnerRole.BUSINESS, now=NOW)

    assert excinfo.value.errors == ["Business profile could not be resolved"]


@pytest.mark.asyncio
async def test_association_create_requires_target_business(session_factory, cache, benefit_graph) -> None:
    service = BenefitService(session_factory, cache)

    with pytest.raises(BenefitValidationError) as excinfo:
        await service.create_benefit(_form(), benefit_graph.association_id, OwnerRole.ASSOCIATION, now=NOW)
    assert "Associations must specify the business offering the benefit" in excinfo.value.errors

    benefit_id = await service.create_benefit(
        _form(business_id=benefit_graph.business_id),
        benefit_graph.association_id,
        OwnerRole.ASSOCIATION,
        now=NOW,
    )
    benefit = await service.get_benefit(benefit_id)
    assert benefit.owner_association_id == benefit_graph.association_id
    assert benefit.owner_association_name == "Asociacion Norte"
    assert benefit.business_id == benefit_graph.business_id
    assert benefit.association_ids == (benefit_graph.association_id,)
    assert benefit.created_by == benefit_graph.association_id


@pytest.mark.asyncio
async def test_create_invalidates_cached_catalog(session_factory, cache) -> None:
    business_id = await seed_business(session_factory)
    member_id = await seed_member(session_factory)
    service = BenefitService(session_factory, cache)
    await seed_benefit(session_factory, business_id, title="Existente")

    before = await service.list_available_benefits(member_id, now=NOW)
    created = await service.create_benefit(_form(), business_id, OwnerRole.BUSINESS, now=NOW)
    after = await service.list_available_benefits(member_id, now=NOW)

    assert len(before) == 1
    assert created in {entry.benefit.id for entry in after}


@pytest.mark.asyncio
async def test_update_applies_partial_changes(session_factory, cache, benefit_graph) -> None:
    other_association = await seed_association(session_factory, "Asociacion Sur")
    benefit_id = await seed_benefit(
        session_factory,
        benefit_graph.business_id,
        access_mode=AccessMode.ASSOCIATION,
        association_ids=(benefit_graph.association_id,),
        global_quota=10,
    )
    service = BenefitService(session_factory, cache)

    await service.update_benefit(
        benefit_id,
        BenefitPatch(
            title="  Nuevo titulo ",
            association_ids=[other_association],
            global_quota=0,
            featured=True,
            tags=["nuevo"],
        ),
    )

    benefit = await service.get_benefit(benefit_id)
    assert benefit.title == "Nuevo titulo"
    assert benefit.association_ids == (other_association,)
    assert benefit.global_quota is None
    assert benefit.featured is True
    assert benefit.tags == ("nuevo",)
    assert benefit.description == "20% en cafe para socios"

    async with session_factory() as session:
        grants = (await session.execute(select(BenefitAssociationGrant))).scalars().all()
        assert [grant.association_id for grant in grants] == [other_association]


@pytest.mark.asyncio
async def test_update_validates_against_current_values(session_factory, cache, benefit_graph) -> None:
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id)
    service = BenefitService(session_factory, cache)

    with pytest.raises(BenefitValidationError) as excinfo:
        await service.update_benefit(
            benefit_id,
            BenefitPatch(discount_value=Decimal("120"), ends_at=NOW - timedelta(days=5)),
        )

    assert excinfo.value.errors == [
        "Percentage discount must be between 1 and 100",
        "End date must be after the start date",
    ]

    with pytest.raises(BenefitNotFoundError):
        await service.update_benefit(uuid4(), BenefitPatch(title="x"))


@pytest.mark.asyncio
async def test_deactivate_is_a_soft_delete(session_factory, cache, benefit_graph) -> None:
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id)
    service = BenefitService(session_factory, cache)
    before = await service.list_available_benefits(benefit_graph.member_id, benefit_graph.association_id, now=NOW)
    assert [entry.benefit.id for entry in before] == [benefit_id]

    await service.deactivate_benefit(benefit_id)

    benefit = await service.get_benefit(benefit_id)
    assert benefit.state == BenefitState.INACTIVE
    assert await service.list_available_benefits(benefit_graph.member_id, benefit_graph.association_id, now=NOW) == []
    assert await service.list_business_benefits(benefit_graph.business_id) == []

    with pytest.raises(BenefitNotFoundError):
        await service.deactivate_benefit(uuid4())


@pytest.mark.asyncio
async def test_sweep_expires_closed_windows(session_factory, cache, benefit_graph) -> None:
    expired = await seed_benefit(session_factory, benefit_graph.business_id, ends_at=NOW - timedelta(hours=1))
    running = await seed_benefit(session_factory, benefit_graph.business_id)
    open_ended = await seed_benefit(session_factory, benefit_graph.business_id, ends_at=None)
    service = BenefitService(session_factory, cache)

    summary = await service.sweep_expired_benefits(now=NOW)

    assert summary.expired == 1
    assert summary.benefit_ids == [expired]
    assert summary.business_ids == [benefit_graph.business_id]
    assert (await service.get_benefit(expired)).state == BenefitState.EXPIRED
    assert (await service.get_benefit(running)).state == BenefitState.ACTIVE
    assert (await service.get_benefit(open_ended)).state == BenefitState.ACTIVE

    async with session_factory() as session:
        business = await session.get(Business, benefit_graph.business_id)
        assert business.active_benefit_count == 2

    again = await service.sweep_expired_benefits(now=NOW)
    assert again.expired == 0
    assert get_benefit_store().snapshot().sweeps["runs"] == 2


@pytest.mark.asyncio
async def test_sync_business_counters(session_factory, cache, benefit_graph) -> None:
    await seed_benefit(session_factory, benefit_graph.business_id)
    await seed_benefit(session_factory, benefit_graph.business_id, state=BenefitState.INACTIVE)
    service = BenefitService(session_factory, cache)

    assert await service.sync_business_benefit_counters() == 1

    async with session_factory() as session:
        business = await session.get(Business, benefit_graph.business_id)
        assert business.active_benefit_count == 1


@pytest.mark.asyncio
async def test_history_is_newest_first_and_refreshed_after_redeem(session_factory, cache, benefit_graph) -> None:
    first = await seed_benefit(session_factory, benefit_graph.business_id, title="Primero")
    second = await seed_benefit(session_factory, benefit_graph.business_id, title="Segundo")
    service = BenefitService(session_factory, cache)
    snapshot = MemberSnapshot(name="Ana Perez")

    await service.redeem(first, benefit_graph.member_id, snapshot, benefit_graph.business_id, now=NOW - timedelta(hours=2))
    assert [item.benefit_id for item in await service.get_redemption_history(benefit_graph.member_id)] == [first]

    await service.redeem(second, benefit_graph.member_id, snapshot, benefit_graph.business_id, now=NOW)
    history = await service.get_redemption_history(benefit_graph.member_id)

    assert [item.benefit_id for item in history] == [second, first]
    assert await service.get_redemption_history(benefit_graph.member_id, limit=1) == history[:1]


@pytest.mark.asyncio
async def test_stats_aggregate_usage(session_factory, cache, benefit_graph) -> None:
    popular = await seed_benefit(session_factory, benefit_graph.business_id, title="Popular", discount_value=Decimal("10"))
    await seed_benefit(session_factory, benefit_graph.business_id, title="Vencido", state=BenefitState.EXPIRED, category="salud")
    service = BenefitService(session_factory, cache)

    for _ in range(3):
        await service.redeem(
            popular,
            benefit_graph.member_id,
            MemberSnapshot(name="Ana Perez"),
            benefit_graph.business_id,
            original_amount=Decimal("50"),
            now=NOW,
        )

    stats = await service.compute_stats(StatsFilter(business_id=benefit_graph.business_id), now=NOW)

    assert stats.total_benefits == 2
    assert stats.active_benefits == 1
    assert stats.expired_count == 1
    assert stats.used_count == 3
    assert stats.total_savings == Decimal("15.00")
    assert stats.savings_this_month == Decimal("15.00")
    assert [(item.month, item.uses) for item in stats.usage_by_month] == [(NOW.strftime("%Y-%m"), 3)]
    assert stats.top_benefits[0].benefit_id == popular
    assert stats.top_benefits[0].uses == 3
    assert {item.category: (item.benefits, item.uses) for item in stats.by_category} == {
        "gastronomia": (1, 3),
        "salud": (1, 0),
    }
    assert [(item.business_name, item.uses) for item in stats.by_business] == [("Cafe Central", 3)]


@pytest.mark.asyncio
async def test_lookup_helpers(session_factory, cache, benefit_graph) -> None:
    public = await seed_benefit(session_factory, benefit_graph.business_id, category="salud")
    scoped = await seed_benefit(
        session_factory,
        benefit_graph.business_id,
        access_mode=AccessMode.ASSOCIATION,
        association_ids=(benefit_graph.association_id,),
    )
    service = BenefitService(session_factory, cache)

    assert await service.list_categories() == ["gastronomia", "salud"]
    assert await service.check_member_access(public, []) is True
    assert await service.check_member_access(scoped, [benefit_graph.association_id]) is True
    assert await service.check_member_access(scoped, [uuid4()]) is False
    assert [benefit.id for benefit in await service.list_association_benefits(benefit_graph.association_id)] == [scoped]

    associations = await service.list_business_associations(benefit_graph.business_id)
    assert [(profile.id, profile.name) for profile in associations] == [(benefit_graph.association_id, "Asociacion Norte")]

    with pytest.raises(BenefitNotFoundError):
        await service.get_benefit(uuid4())


@pytest.mark.asyncio
async def test_association_redemptions_listing(session_factory, cache, benefit_graph) -> None:
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id)
    loner = await seed_member(session_factory, "Hugo Paz", business_ids=(benefit_graph.business_id,))
    service = BenefitService(session_factory, cache)

    await service.redeem(benefit_id, benefit_graph.member_id, MemberSnapshot(name="Ana Perez"), benefit_graph.business_id, now=NOW)
    await service.redeem(benefit_id, loner, MemberSnapshot(name="Hugo Paz"), benefit_graph.business_id, now=NOW)

    redemptions = await service.list_association_redemptions(benefit_id, benefit_graph.association_id)

    assert [item.member_name for item in redemptions] == ["Ana Perez"]


@pytest.mark.asyncio
async def test_lowering_quota_to_usage_exhausts_the_benefit(session_factory, cache, benefit_graph) -> None:
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id, global_quota=10, usage_count=3)
    service = BenefitService(session_factory, cache)

    await service.update_benefit(benefit_id, BenefitPatch(global_quota=3))

    benefit = await service.get_benefit(benefit_id)
    assert benefit.state == BenefitState.EXHAUSTED
    assert benefit.usage_count == 3
    assert benefit.global_quota == 3
    async with session_factory() as session:
        business = await session.get(Business, benefit_graph.business_id)
        assert business.active_benefit_count == 0


@pytest.mark.asyncio
async def test_raising_quota_keeps_the_benefit_active(session_factory, cache, benefit_graph) -> None:
    benefit_id = await seed_benefit(session_factory, benefit_graph.business_id, global_quota=10, usage_count=3)
    service = BenefitService(session_factory, cache)

    await service.update_benefit(benefit_id, BenefitPatch(global_quota=4))

    assert (await service.get_benefit(benefit_id)).state == BenefitState.ACTIVE


@pytest.mark.asyncio
async def test_widening_grants_reaches_cached_catalogs(session_factory, cache, benefit_graph) -> None:
    other_association = await seed_association(session_factory, "Asociacion Sur")
    other_business = await seed_business(session_factory, "Libreria Sur", association_ids=(other_association,))
    benefit_id = await seed_benefit(
        session_factory,
        other_business,
        access_mode=AccessMode.ASSOCIATION,
        association_ids=(other_association,),
    )
    service = BenefitService(session_factory, cache)

    before = await service.list_available_benefits(benefit_graph.member_id, benefit_graph.association_id)
    assert before == []

    await service.update_benefit(
        benefit_id,
        BenefitPatch(association_ids=[other_association, benefit_graph.association_id]),
    )

    after = await service.list_available_benefits(benefit_graph.member_id, benefit_graph.association_id)
    assert [entry.benefit.id for entry in after] == [benefit_id]
