"""Scheduled maintenance jobs for the benefit catalog."""

# meta: job: benefit-maintenance

from __future__ import annotations

from typing import Any, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fidelya_api.services.benefits import BenefitCache, BenefitService


async def sweep_expired_benefits(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: BenefitCache | None = None,
) -> Dict[str, Any]:
    """Expire active benefits whose validity window has closed."""

    service = BenefitService(session_factory, cache or BenefitCache())
    summary = (await service.sweep_expired_benefits()).as_dict()
    logger.bind(summary=summary).info("Benefit expiry sweep job completed")
    return summary


async def sync_business_benefit_counters(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: BenefitCache | None = None,
) -> Dict[str, Any]:
    """Recompute denormalized active-benefit counters on every business."""

    service = BenefitService(session_factory, cache or BenefitCache())
    summary = {"businesses_synced": await service.sync_business_benefit_counters()}
    logger.bind(summary=summary).info("Business benefit counter sync completed")
    return summary


__all__ = ["sweep_expired_benefits", "sync_business_benefit_counters"]
