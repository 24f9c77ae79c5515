"""Create affiliation, benefit and redemption tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


affiliation_status = postgresql.ENUM("active", "inactive", "suspended", name="affiliation_status", create_type=False)
discount_kind = postgresql.ENUM(
    "percentage", "fixed_amount", "free_item", name="benefit_discount_kind", create_type=False
)
benefit_state = postgresql.ENUM("active", "inactive", "expired", "exhausted", name="benefit_state", create_type=False)
access_mode = postgresql.ENUM("public", "association", "direct", name="benefit_access_mode", create_type=False)
redemption_status = postgresql.ENUM("used", "failed", "pending", name="benefit_redemption_status", create_type=False)

_ENUMS = (affiliation_status, discount_kind, benefit_state, access_mode, redemption_status)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "associations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("logo_url", sa.String(), nullable=True),
        sa.Column("status", affiliation_status, nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "businesses",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("logo_url", sa.String(), nullable=True),
        sa.Column("status", affiliation_status, nullable=False, server_default="active"),
        sa.Column("active_benefit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "business_association_links",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("association_id", _uuid(), sa.ForeignKey("associations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("business_id", "association_id", name="uq_business_association_links_pair"),
    )
    op.create_index("ix_business_association_links_business_id", "business_association_links", ["business_id"])
    op.create_index("ix_business_association_links_association_id", "business_association_links", ["association_id"])

    op.create_table(
        "members",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("association_id", _uuid(), sa.ForeignKey("associations.id"), nullable=True),
        sa.Column("status", affiliation_status, nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_members_association_id", "members", ["association_id"])

    op.create_table(
        "member_business_affiliations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("member_id", _uuid(), sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False),
        sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("member_id", "business_id", name="uq_member_business_affiliations_pair"),
    )
    op.create_index("ix_member_business_affiliations_member_id", "member_business_affiliations", ["member_id"])
    op.create_index("ix_member_business_affiliations_business_id", "member_business_affiliations", ["business_id"])

    op.create_table(
        "benefits",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("conditions", sa.Text(), nullable=True),
        sa.Column("discount_kind", discount_kind, nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("state", benefit_state, nullable=False, server_default="active"),
        sa.Column("access_mode", access_mode, nullable=False, server_default="public"),
        sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id"), nullable=False),
        sa.Column("business_name", sa.String(), nullable=False),
        sa.Column("business_logo_url", sa.String(), nullable=True),
        sa.Column("owner_association_id", _uuid(), sa.ForeignKey("associations.id"), nullable=True),
        sa.Column("owner_association_name", sa.String(), nullable=True),
        sa.Column("created_by", _uuid(), nullable=False),
        sa.Column("global_quota", sa.Integer(), nullable=True),
        sa.Column("per_member_quota", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("featured", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_benefits_category", "benefits", ["category"])
    op.create_index("ix_benefits_state_access_mode", "benefits", ["state", "access_mode"])
    op.create_index("ix_benefits_business_state", "benefits", ["business_id", "state"])

    op.create_table(
        "benefit_association_grants",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("benefit_id", _uuid(), sa.ForeignKey("benefits.id", ondelete="CASCADE"), nullable=False),
        sa.Column("association_id", _uuid(), sa.ForeignKey("associations.id", ondelete="CASCADE"), nullable=False),
        sa.UniqueConstraint("benefit_id", "association_id", name="uq_benefit_association_grants_pair"),
    )
    op.create_index("ix_benefit_association_grants_benefit_id", "benefit_association_grants", ["benefit_id"])
    op.create_index("ix_benefit_association_grants_association_id", "benefit_association_grants", ["association_id"])

    op.create_table(
        "benefit_redemptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("benefit_id", _uuid(), sa.ForeignKey("benefits.id"), nullable=False),
        sa.Column("benefit_title", sa.String(), nullable=False),
        sa.Column("member_id", _uuid(), sa.ForeignKey("members.id"), nullable=False),
        sa.Column("member_name", sa.String(), nullable=False),
        sa.Column("member_email", sa.String(), nullable=True),
        sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id"), nullable=False),
        sa.Column("business_name", sa.String(), nullable=False),
        sa.Column("association_id", _uuid(), sa.ForeignKey("associations.id"), nullable=True),
        sa.Column("association_name", sa.String(), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("original_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("final_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("status", redemption_status, nullable=False, server_default="used"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_benefit_redemptions_benefit_member", "benefit_redemptions", ["benefit_id", "member_id"])
    op.create_index("ix_benefit_redemptions_member_redeemed_at", "benefit_redemptions", ["member_id", "redeemed_at"])
    op.create_index("ix_benefit_redemptions_business_id", "benefit_redemptions", ["business_id"])
    op.create_index("ix_benefit_redemptions_association_id", "benefit_redemptions", ["association_id"])


def downgrade() -> None:
    op.drop_table("benefit_redemptions")
    op.drop_table("benefit_association_grants")
    op.drop_table("benefits")
    op.drop_table("member_business_affiliations")
    op.drop_table("members")
    op.drop_table("business_association_links")
    op.drop_table("businesses")
    op.drop_table("associations")
    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
