from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from fidelya_api.core.settings import settings
from fidelya_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import BenefitJobScheduler
from .services.benefits import BenefitCache


APP_VERSION = "0.1.0"


def _schedule_path() -> Path:
    schedule_path = Path(settings.benefit_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    schedule_path = _schedule_path()
    job_scheduler = BenefitJobScheduler(
        session_factory=async_session,
        config_path=schedule_path,
        context={"cache": app.state.benefit_cache},
    )
    app.state.benefit_job_scheduler = job_scheduler

    scheduler_enabled = settings.benefit_scheduler_enabled
    if scheduler_enabled:
        try:
            job_scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Benefit job scheduler failed to start", error=str(exc))
        else:
            logger.info("Benefit job scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info(
            "Benefit job scheduler disabled",
            reason="benefit_scheduler_enabled is false",
        )

    try:
        yield
    finally:
        if job_scheduler.is_running:
            await job_scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the Fidelya benefits API."""
    configure_logging(
        service_name="fidelya-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Fidelya API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.benefit_cache = BenefitCache()

    configure_tracing(
        app,
        service_name="fidelya-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    return app
