from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fidelya_api.core.settings import settings
from fidelya_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail="Record store unreachable")
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    scheduler = getattr(request.app.state, "benefit_job_scheduler", None)
    if settings.benefit_scheduler_enabled and scheduler is not None:
        health = scheduler.health()
        running = bool(health.get("running"))
        totals = health.get("totals") or {}
        component_status: Literal["ready", "starting", "error", "degraded"] = "ready" if running else "starting"
        detail: str | None = None
        if not running:
            detail = "Benefit job scheduler not running"
            status = "degraded" if status != "error" else status
        elif isinstance(totals, dict) and totals.get("failures"):
            component_status = "degraded"
            detail = f"{totals['failures']} benefit job run(s) failed"
            status = "degraded" if status != "error" else status
        components["benefit_scheduler"] = ComponentStatus(status=component_status, detail=detail)
    else:
        components["benefit_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Benefit job scheduler disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
