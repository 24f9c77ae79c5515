from pathlib import Path

import pytest

from fidelya_api.observability.scheduler import get_scheduler_store
from fidelya_api.scheduling import BenefitJobScheduler, JobDefinition, ScheduleConfig, load_schedule
from fidelya_api.services.benefits import BenefitCache


def _job(job_id: str, max_attempts: int) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        task=f"tests.{job_id}",
        cron="* * * * *",
        max_attempts=max_attempts,
        backoff_seconds=0.0,
        backoff_multiplier=1.0,
        max_backoff_seconds=0.0,
    )


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = BenefitJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")
    attempts = 0

    async def flaky_job(*, session_factory) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"expired": 4}

    job = _job("flaky", max_attempts=3)
    await scheduler.wrap(flaky_job, job)()

    snapshot = store.snapshot()
    assert attempts == 2
    assert snapshot.totals == {"runs": 1, "success": 1, "failures": 0, "retries": 1}
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot["last_result"] == {"expired": 4}
    assert job_snapshot["last_error"] is None
    assert job_snapshot["last_attempts"] == 2


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = BenefitJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = _job("failing", max_attempts=2)
    await scheduler.wrap(failing_job, job)()
    await scheduler.wrap(failing_job, job)()

    job_snapshot = store.snapshot().jobs[job.id]
    assert job_snapshot["totals"]["failures"] == 2
    assert job_snapshot["totals"]["retries"] == 2
    assert job_snapshot["totals"]["consecutive_failures"] == 2
    assert job_snapshot["last_error"] == "boom"
    assert job_snapshot["last_error_at"] is not None


@pytest.mark.asyncio
async def test_scheduler_passes_context_and_kwargs(tmp_path: Path) -> None:
    cache = BenefitCache()
    scheduler = BenefitJobScheduler(
        session_factory=lambda: None,
        config_path=tmp_path / "noop.toml",
        context={"cache": cache},
    )
    received = {}

    async def job_func(*, session_factory, cache, dry_run) -> None:
        received.update(cache=cache, dry_run=dry_run)

    job = _job("context", max_attempts=1)
    job.kwargs = {"dry_run": True}
    await scheduler.wrap(job_func, job)()

    assert received == {"cache": cache, "dry_run": True}


@pytest.mark.asyncio
async def test_scheduler_health_snapshot(tmp_path: Path) -> None:
    scheduler = BenefitJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def successful_job(*, session_factory) -> None:
        return None

    job = _job("healthy", max_attempts=1)
    await scheduler.wrap(successful_job, job)()
    scheduler._config = ScheduleConfig(timezone="UTC", jobs=[job])

    health = scheduler.health()
    assert health["running"] is False
    assert health["configured_jobs"] == 1
    assert health["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["totals"]["success"] == 1


def test_resolve_task_requires_async_callable() -> None:
    task = BenefitJobScheduler.resolve_task("fidelya_api.jobs.benefits.sweep_expired_benefits")
    assert task.__name__ == "sweep_expired_benefits"

    with pytest.raises(TypeError):
        BenefitJobScheduler.resolve_task("fidelya_api.services.benefits.eligibility.filter_valid")
    with pytest.raises(AttributeError):
        BenefitJobScheduler.resolve_task("fidelya_api.jobs.benefits.missing")
    with pytest.raises(ValueError):
        BenefitJobScheduler.resolve_task("no_module_path")


def test_load_schedule_parses_retry_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "America/Argentina/Buenos_Aires"

        [jobs.sweep]
        task = "fidelya_api.jobs.benefits.sweep_expired_benefits"
        cron = "*/15 * * * *"
        max_attempts = 4
        backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30

        [jobs.broken]
        cron = "* * * * *"
        """
    )

    config = load_schedule(config_path)

    assert config.timezone == "America/Argentina/Buenos_Aires"
    assert [job.id for job in config.jobs] == ["sweep"]
    job = config.jobs[0]
    assert job.max_attempts == 4
    assert job.backoff_seconds == 2.0
    assert job.backoff_multiplier == 3.0
    assert job.max_backoff_seconds == 30.0


def test_bundled_schedule_resolves(tmp_path: Path) -> None:
    config_path = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"

    config = load_schedule(config_path)

    assert {job.id for job in config.jobs} == {"benefit_expiry_sweep", "business_counter_sync"}
    for job in config.jobs:
        BenefitJobScheduler.resolve_task(job.task)

    with pytest.raises(FileNotFoundError):
        load_schedule(tmp_path / "missing.toml")
