"""Benefit catalog and redemption records."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from fidelya_api.db.base import Base
from fidelya_api.models.affiliation import enum_values


class DiscountKind(str, Enum):
    """How a benefit's discount value is applied to a purchase."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_ITEM = "free_item"


class BenefitState(str, Enum):
    """Benefit lifecycle states. Everything but ``active`` is terminal."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


class AccessMode(str, Enum):
    """Audience a benefit is published to."""

    PUBLIC = "public"
    ASSOCIATION = "association"
    DIRECT = "direct"


class RedemptionStatus(str, Enum):
    USED = "used"
    FAILED = "failed"
    PENDING = "pending"


class Benefit(Base):
    """Discount or perk offered by a business to eligible members."""

    __tablename__ = "benefits"
    __table_args__ = (
        Index("ix_benefits_state_access_mode", "state", "access_mode"),
        Index("ix_benefits_business_state", "business_id", "state"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String, nullable=False, index=True)
    conditions = Column(Text, nullable=True)
    discount_kind = Column(
        SqlEnum(DiscountKind, name="benefit_discount_kind", values_callable=enum_values),
        nullable=False,
    )
    discount_value = Column(Numeric(12, 2), nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    state = Column(
        SqlEnum(BenefitState, name="benefit_state", values_callable=enum_values),
        nullable=False,
        default=BenefitState.ACTIVE,
    )
    access_mode = Column(
        SqlEnum(AccessMode, name="benefit_access_mode", values_callable=enum_values),
        nullable=False,
        default=AccessMode.PUBLIC,
    )
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False)
    business_name = Column(String, nullable=False)
    business_logo_url = Column(String, nullable=True)
    owner_association_id = Column(UUID(as_uuid=True), ForeignKey("associations.id"), nullable=True)
    owner_association_name = Column(String, nullable=True)
    created_by = Column(UUID(as_uuid=True), nullable=False)
    global_quota = Column(Integer, nullable=True)
    per_member_quota = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0, server_default="0")
    tags = Column(JSON, nullable=False, default=list)
    featured = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    grants = relationship(
        "BenefitAssociationGrant",
        back_populates="benefit",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def association_ids(self) -> list:
        return [grant.association_id for grant in self.grants]


class BenefitAssociationGrant(Base):
    """Association granted access to an association-scoped benefit."""

    __tablename__ = "benefit_association_grants"
    __table_args__ = (
        UniqueConstraint("benefit_id", "association_id", name="uq_benefit_association_grants_pair"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    benefit_id = Column(UUID(as_uuid=True), ForeignKey("benefits.id", ondelete="CASCADE"), nullable=False, index=True)
    association_id = Column(
        UUID(as_uuid=True), ForeignKey("associations.id", ondelete="CASCADE"), nullable=False, index=True
    )

    benefit = relationship("Benefit", back_populates="grants")


class Redemption(Base):
    """Immutable record of a member using a benefit."""

    __tablename__ = "benefit_redemptions"
    __table_args__ = (
        Index("ix_benefit_redemptions_benefit_member", "benefit_id", "member_id"),
        Index("ix_benefit_redemptions_member_redeemed_at", "member_id", "redeemed_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    benefit_id = Column(UUID(as_uuid=True), ForeignKey("benefits.id"), nullable=False)
    benefit_title = Column(String, nullable=False)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id"), nullable=False)
    member_name = Column(String, nullable=False)
    member_email = Column(String, nullable=True)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    business_name = Column(String, nullable=False)
    association_id = Column(UUID(as_uuid=True), ForeignKey("associations.id"), nullable=True, index=True)
    association_name = Column(String, nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    original_amount = Column(Numeric(12, 2), nullable=True)
    final_amount = Column(Numeric(12, 2), nullable=True)
    status = Column(
        SqlEnum(RedemptionStatus, name="benefit_redemption_status", values_callable=enum_values),
        nullable=False,
        default=RedemptionStatus.USED,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
