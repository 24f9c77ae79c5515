"""Members, businesses, associations and the links between them."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from fidelya_api.db.base import Base


def enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class AffiliationStatus(str, Enum):
    """Lifecycle status shared by members, businesses and associations."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class Association(Base):
    """Member association that negotiates benefits with businesses."""

    __tablename__ = "associations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    logo_url = Column(String, nullable=True)
    status = Column(
        SqlEnum(AffiliationStatus, name="affiliation_status", values_callable=enum_values),
        nullable=False,
        default=AffiliationStatus.ACTIVE,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    members = relationship("Member", back_populates="association")


class Business(Base):
    """Business (comercio) that owns and honours benefits."""

    __tablename__ = "businesses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    logo_url = Column(String, nullable=True)
    status = Column(
        SqlEnum(AffiliationStatus, name="affiliation_status", values_callable=enum_values),
        nullable=False,
        default=AffiliationStatus.ACTIVE,
    )
    active_benefit_count = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    association_links = relationship(
        "BusinessAssociationLink",
        back_populates="business",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def association_ids(self) -> list:
        return [link.association_id for link in self.association_links]


class BusinessAssociationLink(Base):
    """Many-to-many link owned by the business side."""

    __tablename__ = "business_association_links"
    __table_args__ = (
        UniqueConstraint("business_id", "association_id", name="uq_business_association_links_pair"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    association_id = Column(
        UUID(as_uuid=True), ForeignKey("associations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    business = relationship("Business", back_populates="association_links")


class Member(Base):
    """Member (socio) who browses and redeems benefits."""

    __tablename__ = "members"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    association_id = Column(UUID(as_uuid=True), ForeignKey("associations.id"), nullable=True, index=True)
    status = Column(
        SqlEnum(AffiliationStatus, name="affiliation_status", values_callable=enum_values),
        nullable=False,
        default=AffiliationStatus.ACTIVE,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    association = relationship("Association", back_populates="members")
    business_affiliations = relationship(
        "MemberBusinessAffiliation",
        back_populates="member",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class MemberBusinessAffiliation(Base):
    """Direct affiliation of a member to a business."""

    __tablename__ = "member_business_affiliations"
    __table_args__ = (
        UniqueConstraint("member_id", "business_id", name="uq_member_business_affiliations_pair"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    member = relationship("Member", back_populates="business_affiliations")
