"""Recurring job scheduling."""

from .config import JobDefinition, ScheduleConfig, load_schedule  # noqa: F401
from .runner import BenefitJobScheduler  # noqa: F401
