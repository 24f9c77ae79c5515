import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()
os.environ.setdefault("OTEL_SDK_DISABLED", "true")

from fidelya_api.app import create_app  # noqa: E402
from fidelya_api.db.base import Base  # noqa: E402
from fidelya_api.db.session import get_session, get_session_factory  # noqa: E402
from fidelya_api.models import (  # noqa: E402
    AccessMode,
    Association,
    Benefit,
    BenefitAssociationGrant,
    BenefitState,
    Business,
    BusinessAssociationLink,
    DiscountKind,
    Member,
    MemberBusinessAffiliation,
)
from fidelya_api.observability.benefits import get_benefit_store  # noqa: E402
from fidelya_api.observability.scheduler import get_scheduler_store  # noqa: E402
from fidelya_api.services.benefits import BenefitCache  # noqa: E402


NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture(autouse=True)
def reset_observability():
    get_benefit_store().reset()
    get_scheduler_store().reset()
    yield
    get_benefit_store().reset()
    get_scheduler_store().reset()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File-backed so concurrent sessions get their own connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'benefits.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def cache() -> BenefitCache:
    return BenefitCache()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@dataclass
class BenefitGraph:
    """Identifiers of a seeded association, business and member set."""

    association_id: UUID
    business_id: UUID
    member_id: UUID
    benefits: dict[str, UUID] = field(default_factory=dict)


async def seed_association(session_factory, name: str = "Asociacion Norte") -> UUID:
    async with session_factory() as session:
        association = Association(name=name)
        session.add(association)
        await session.commit()
        return association.id


async def seed_business(session_factory, name: str = "Cafe Central", association_ids: tuple = ()) -> UUID:
    async with session_factory() as session:
        business = Business(name=name, logo_url=f"https://cdn.example.com/{name.lower().replace(' ', '-')}.png")
        session.add(business)
        await session.flush()
        for association_id in association_ids:
            session.add(BusinessAssociationLink(business_id=business.id, association_id=association_id))
        await session.commit()
        return business.id


async def seed_member(
    session_factory,
    name: str = "Ana Perez",
    association_id: UUID | None = None,
    business_ids: tuple = (),
) -> UUID:
    async with session_factory() as session:
        member = Member(name=name, email=f"{name.split()[0].lower()}@example.com", association_id=association_id)
        session.add(member)
        await session.flush()
        for business_id in business_ids:
            session.add(MemberBusinessAffiliation(member_id=member.id, business_id=business_id))
        await session.commit()
        return member.id


async def seed_benefit(
    session_factory,
    business_id: UUID,
    *,
    title: str = "20% en cafe",
    access_mode: AccessMode = AccessMode.PUBLIC,
    association_ids: tuple = (),
    discount_kind: DiscountKind = DiscountKind.PERCENTAGE,
    discount_value: Decimal = Decimal("20"),
    state: BenefitState = BenefitState.ACTIVE,
    starts_at: datetime | None = NOW - timedelta(days=1),
    ends_at: datetime | None = NOW + timedelta(days=30),
    global_quota: int | None = None,
    per_member_quota: int | None = None,
    usage_count: int = 0,
    category: str = "gastronomia",
    featured: bool = False,
    tags: tuple = (),
    created_at: datetime | None = None,
    **extra: Any,
) -> UUID:
    async with session_factory() as session:
        business = await session.get(Business, business_id)
        benefit = Benefit(
            title=title,
            description=f"{title} para socios",
            category=category,
            discount_kind=discount_kind,
            discount_value=discount_value,
            starts_at=starts_at,
            ends_at=ends_at,
            state=state,
            access_mode=access_mode,
            business_id=business_id,
            business_name=business.name,
            business_logo_url=business.logo_url,
            created_by=business_id,
            global_quota=global_quota,
            per_member_quota=per_member_quota,
            usage_count=usage_count,
            tags=list(tags),
            featured=featured,
            grants=[BenefitAssociationGrant(association_id=association_id) for association_id in association_ids],
            **extra,
        )
        if created_at is not None:
            benefit.created_at = created_at
        session.add(benefit)
        await session.commit()
        return benefit.id


@pytest_asyncio.fixture
async def benefit_graph(session_factory) -> BenefitGraph:
    """One association linked to one business with a member of that association."""

    association_id = await seed_association(session_factory)
    business_id = await seed_business(session_factory, association_ids=(association_id,))
    member_id = await seed_member(session_factory, association_id=association_id)
    return BenefitGraph(association_id=association_id, business_id=business_id, member_id=member_id)
