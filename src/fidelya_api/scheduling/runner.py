"""APScheduler runtime for benefit maintenance jobs."""

from __future__ import annotations

import asyncio
import inspect
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from fidelya_api.observability.scheduler import SchedulerObservabilityStore, get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_schedule

JobCallable = Callable[..., Awaitable[Any]]


class BenefitJobScheduler:
    """Register the configured cron jobs and run them with retry and backoff.

    Every job is called with ``session_factory`` plus the shared ``context``
    (for instance the application's benefit cache) and its own ``kwargs``.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any],
        config_path: Path,
        context: Mapping[str, Any] | None = None,
        observability: SchedulerObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._context = dict(context or {})
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._observability = observability or get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        config = load_schedule(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.jobs:
            func = self.resolve_task(job.task)
            scheduler.add_job(
                self.wrap(func, job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
            )
            logger.info("Registered benefit job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Benefit job scheduler started", jobs=len(config.jobs))

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Benefit job scheduler stopped")

    @staticmethod
    def resolve_task(task: str) -> JobCallable:
        module_name, _, attr = task.rpartition(".")
        if not module_name:
            raise ValueError(f"Invalid task path: {task}")
        func = getattr(import_module(module_name), attr, None)
        if func is None:
            raise AttributeError(f"Task {task} not found")
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Task {task} must be an async function")
        return func

    def wrap(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[None]]:
        async def _runner() -> None:
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()
            delay = job.backoff_seconds

            for attempt in range(1, job.max_attempts + 1):
                try:
                    result = await func(session_factory=self._session_factory, **self._context, **job.kwargs)
                except Exception as exc:  # noqa: BLE001
                    if attempt >= job.max_attempts:
                        self._observability.record_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            attempts=attempt,
                            error=str(exc),
                        )
                        logger.exception("Benefit job failed after retries", job_id=job.id, attempts=attempt)
                        return

                    self._observability.record_retry(job.id, job.task, attempts=attempt, error=str(exc))
                    logger.warning("Benefit job retrying", job_id=job.id, attempt=attempt + 1, delay_seconds=delay)
                    if delay:
                        await asyncio.sleep(delay)
                    delay = min(delay * job.backoff_multiplier, job.max_backoff_seconds)
                    continue

                runtime_seconds = time.perf_counter() - started_at
                self._observability.record_success(
                    job.id,
                    job.task,
                    runtime_seconds=runtime_seconds,
                    attempts=attempt,
                    result=result if isinstance(result, dict) else None,
                )
                logger.info("Benefit job completed", job_id=job.id, attempts=attempt, runtime_seconds=runtime_seconds)
                return

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "max_attempts": job.max_attempts,
                    "metrics": snapshot.jobs.get(job.id),
                }
                for job in jobs
            ],
        }


__all__ = ["BenefitJobScheduler"]
