"""Benefit eligibility and redemption engine exports."""

from .cache import BenefitCache  # noqa: F401
from .catalog import BenefitCatalog  # noqa: F401
from .eligibility import (  # noqa: F401
    CatalogFilter,
    apply_catalog_filter,
    filter_valid,
    merge_benefits,
)
from .errors import (  # noqa: F401
    AccessDeniedError,
    BenefitEngineError,
    BenefitExpiredError,
    BenefitNotActiveError,
    BenefitNotFoundError,
    BenefitNotYetStartedError,
    BenefitValidationError,
    PerMemberQuotaExceededError,
    QuotaExhaustedError,
    StoreUnavailableError,
)
from .forms import BenefitForm, BenefitPatch, OwnerRole  # noqa: F401
from .identity import IdentityResolver  # noqa: F401
from .records import (  # noqa: F401
    BenefitRecord,
    CatalogEntry,
    CatalogOrigin,
    EntityProfile,
    MemberAffiliations,
    MemberSnapshot,
    RedemptionRecord,
)
from .redemption import RedemptionTransactor, compute_discount  # noqa: F401
from .repository import BenefitRepository  # noqa: F401
from .service import BenefitService, SweepSummary  # noqa: F401
from .stats import BenefitStats, StatsFilter, compute_benefit_stats  # noqa: F401
