"""Seed a small association, business and benefit graph for local testing."""

# meta: script: benefit-demo-seed

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import sys
from decimal import Decimal
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed demo benefits")
    parser.add_argument("--association", default="Asociacion Demo", help="Name of the association to create.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Execute inside a transaction and roll back changes for verification.",
    )
    return parser.parse_args()


async def _seed(association_name: str, dry_run: bool) -> dict[str, str]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from fidelya_api.db.session import async_session  # type: ignore import-position
    from fidelya_api.models import (  # type: ignore import-position
        AccessMode,
        Association,
        Benefit,
        BenefitAssociationGrant,
        Business,
        BusinessAssociationLink,
        DiscountKind,
        Member,
    )

    now = dt.datetime.now(dt.timezone.utc)

    async with async_session() as session:
        association = Association(name=association_name)
        business = Business(name="Cafe Demo", active_benefit_count=2)
        member = Member(name="Socio Demo", email="socio@example.com", association=association)
        session.add_all([association, business, member])
        await session.flush()

        session.add(BusinessAssociationLink(business_id=business.id, association_id=association.id))
        granted = Benefit(
            title="20% en cafeteria",
            description="Descuento para socios de la asociacion",
            category="gastronomia",
            discount_kind=DiscountKind.PERCENTAGE,
            discount_value=Decimal("20"),
            starts_at=now - dt.timedelta(days=1),
            ends_at=now + dt.timedelta(days=30),
            access_mode=AccessMode.ASSOCIATION,
            business_id=business.id,
            business_name=business.name,
            created_by=business.id,
            global_quota=100,
            per_member_quota=2,
            tags=["cafe", "socios"],
            featured=True,
        )
        public = Benefit(
            title="Medialuna gratis",
            description="Con cualquier cafe",
            category="gastronomia",
            discount_kind=DiscountKind.FREE_ITEM,
            discount_value=Decimal("0"),
            starts_at=now - dt.timedelta(days=1),
            access_mode=AccessMode.PUBLIC,
            business_id=business.id,
            business_name=business.name,
            created_by=business.id,
            tags=["cafe"],
        )
        session.add_all([granted, public])
        await session.flush()
        session.add(BenefitAssociationGrant(benefit_id=granted.id, association_id=association.id))

        summary = {
            "association_id": str(association.id),
            "business_id": str(business.id),
            "member_id": str(member.id),
            "benefit_ids": ",".join(str(benefit.id) for benefit in (granted, public)),
        }
        if dry_run:
            await session.rollback()
            logger.info("Dry run complete; changes rolled back")
        else:
            await session.commit()
    return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_seed(args.association, args.dry_run))
    logger.success("Demo benefits seeded", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
