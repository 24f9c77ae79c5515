"""Dependencies wiring the benefit engine into request handlers."""

from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fidelya_api.db.session import get_session_factory
from fidelya_api.services.benefits import BenefitCache, BenefitService


def get_benefit_cache(request: Request) -> BenefitCache:
    """Return the application-wide cache created by the app factory."""

    cache = getattr(request.app.state, "benefit_cache", None)
    if cache is None:
        cache = BenefitCache()
        request.app.state.benefit_cache = cache
    return cache


async def get_benefit_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    cache: BenefitCache = Depends(get_benefit_cache),
) -> BenefitService:
    return BenefitService(session_factory, cache)
