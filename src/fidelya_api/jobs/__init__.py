"""Scheduled job entry points."""

from .benefits import sweep_expired_benefits, sync_business_benefit_counters  # noqa: F401
