"""SQLAlchemy models package."""

from .affiliation import (  # noqa: F401
    AffiliationStatus,
    Association,
    Business,
    BusinessAssociationLink,
    Member,
    MemberBusinessAffiliation,
)
from .benefits import (  # noqa: F401
    AccessMode,
    Benefit,
    BenefitAssociationGrant,
    BenefitState,
    DiscountKind,
    Redemption,
    RedemptionStatus,
)
