from fastapi import APIRouter

from .endpoints import benefits, health

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(benefits.router)
