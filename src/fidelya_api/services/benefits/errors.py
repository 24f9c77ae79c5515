"""Typed failures raised by the benefit engine."""

from __future__ import annotations

from typing import Iterable


class BenefitEngineError(RuntimeError):
    """Base class for benefit engine failures."""

    code = "benefit_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


class BenefitNotFoundError(BenefitEngineError):
    """Benefit does not exist."""

    code = "not_found"


class BenefitValidationError(BenefitEngineError):
    """Benefit payload failed validation."""

    code = "validation_failed"

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Benefit payload failed validation")


class BenefitNotActiveError(BenefitEngineError):
    """Benefit is not active."""

    code = "not_active"


class BenefitExpiredError(BenefitEngineError):
    """Benefit has expired."""

    code = "expired"


class BenefitNotYetStartedError(BenefitEngineError):
    """Benefit is not valid yet."""

    code = "not_yet_started"


class QuotaExhaustedError(BenefitEngineError):
    """Benefit reached its usage limit."""

    code = "quota_exhausted"


class PerMemberQuotaExceededError(BenefitEngineError):
    """Member reached the usage limit for this benefit."""

    code = "per_member_quota_exceeded"


class AccessDeniedError(BenefitEngineError):
    """Member has no access to this benefit."""

    code = "access_denied"


class StoreUnavailableError(BenefitEngineError):
    """Record store is unavailable."""

    code = "store_unavailable"


__all__ = [
    "AccessDeniedError",
    "BenefitEngineError",
    "BenefitExpiredError",
    "BenefitNotActiveError",
    "BenefitNotFoundError",
    "BenefitNotYetStartedError",
    "BenefitValidationError",
    "PerMemberQuotaExceededError",
    "QuotaExhaustedError",
    "StoreUnavailableError",
]
