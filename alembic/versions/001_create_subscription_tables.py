"""Create plan catalog, subscription and usage tables."""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001_create_subscription_tables"
down_revision = None
branch_labels = None
depends_on = None

STATUSES = ("pending", "trial", "active", "inactive", "canceled", "expired")
RESET_PERIODS = ("never", "daily", "monthly", "yearly")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "plans",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "plan_pricings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "plan_id",
            sa.String(),
            sa.ForeignKey("plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("label", sa.String(), nullable=False, server_default=""),
        sa.Column("duration_in_days", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_plan_pricings_plan_id", "plan_pricings", ["plan_id"])

    op.create_table(
        "plan_features",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "plan_id",
            sa.String(),
            sa.ForeignKey("plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("value", sa.String(), nullable=True),
        sa.Column(
            "reset_period",
            sa.Enum(*RESET_PERIODS, name="featureresetperiod", native_enum=False, length=20),
            nullable=False,
            server_default="never",
        ),
        *_timestamps(),
        sa.UniqueConstraint("plan_id", "key", name="uq_plan_feature_key"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("subscriber_type", sa.String(), nullable=False),
        sa.Column("subscriber_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column(
            "plan_pricing_id",
            sa.Integer(),
            sa.ForeignKey("plan_pricings.id"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(*STATUSES, name="subscriptionstatus", native_enum=False, length=20),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "is_auto_renewal", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"])
    op.create_index(
        "ix_subscriptions_subscriber", "subscriptions", ["subscriber_type", "subscriber_id"]
    )
    op.create_index("ix_subscriptions_status_ends_at", "subscriptions", ["status", "ends_at"])
    op.create_index(
        "ix_subscriptions_status_grace_ends_at", "subscriptions", ["status", "grace_ends_at"]
    )
    op.create_index(
        "ix_subscriptions_auto_renewal_ends_at",
        "subscriptions",
        ["is_auto_renewal", "ends_at"],
    )

    op.create_table(
        "subscription_usages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("subscription_id", "key", name="uq_subscription_usage_key"),
    )
    op.create_index(
        "ix_subscription_usages_key_used", "subscription_usages", ["key", "used"]
    )
    op.create_index(
        "ix_subscription_usages_last_used_at", "subscription_usages", ["last_used_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_subscription_usages_last_used_at", table_name="subscription_usages")
    op.drop_index("ix_subscription_usages_key_used", table_name="subscription_usages")
    op.drop_table("subscription_usages")

    op.drop_index("ix_subscriptions_auto_renewal_ends_at", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status_grace_ends_at", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status_ends_at", table_name="subscriptions")
    op.drop_index("ix_subscriptions_subscriber", table_name="subscriptions")
    op.drop_index("ix_subscriptions_plan_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_table("plan_features")
    op.drop_index("ix_plan_pricings_plan_id", table_name="plan_pricings")
    op.drop_table("plan_pricings")
    op.drop_table("plans")
