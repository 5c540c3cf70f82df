"""initial entitlement schema

Revision ID: 3b1f0c7e9a42
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b1f0c7e9a42"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


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
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _id() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def upgrade() -> None:
    op.create_table(
        "subscription_plans",
        _id(),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="eur"),
        sa.Column(
            "billing_interval", sa.String(16), nullable=False, server_default="month"
        ),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "features",
            postgresql.ARRAY(sa.String()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column(
            "max_concurrent_terminals", sa.Integer(), nullable=False, server_default="1"
        ),
        sa.Column("max_courses", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("max_lab_sessions", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column(
            "max_concurrent_users", sa.Integer(), nullable=False, server_default="1"
        ),
        sa.Column(
            "max_session_duration_minutes",
            sa.Integer(),
            nullable=False,
            server_default="60",
        ),
        sa.Column(
            "network_access_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "data_persistence_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "data_persistence_gb", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "allowed_machine_sizes",
            postgresql.ARRAY(sa.String()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column(
            "pricing_tiers",
            postgresql.JSONB(),
            nullable=False,
            server_default="[]",
        ),
        sa.Column("required_role", sa.String(64), nullable=True),
        sa.Column("provider_price_id", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "organizations",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("owner_user_id", sa.String(255), nullable=False),
        sa.Column(
            "plan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscription_plans.id"),
            nullable=True,
        ),
        sa.Column(
            "is_personal", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("max_groups", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("max_members", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        *_timestamps(),
    )
    op.create_index(
        "uq_organizations_owner_name_active",
        "organizations",
        ["owner_user_id", "name"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "organization_members",
        _id(),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(255), nullable=False, index=True),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("invited_by", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "user_id"),
    )

    op.create_table(
        "groups",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("owner_user_id", sa.String(255), nullable=False),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id"),
            nullable=True,
            index=True,
        ),
        sa.Column(
            "parent_group_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("groups.id"),
            nullable=True,
        ),
        sa.Column("max_members", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        *_timestamps(),
    )

    op.create_table(
        "group_members",
        _id(),
        sa.Column(
            "group_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("groups.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(255), nullable=False, index=True),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("invited_by", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "user_id"),
    )

    op.create_table(
        "subscription_batches",
        _id(),
        sa.Column("purchaser_user_id", sa.String(255), nullable=False, index=True),
        sa.Column(
            "plan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscription_plans.id"),
            nullable=False,
        ),
        sa.Column("total_quantity", sa.Integer(), nullable=False),
        sa.Column(
            "assigned_quantity", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column(
            "group_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("groups.id"),
            nullable=True,
        ),
        sa.Column(
            "provider_subscription_id", sa.String(255), nullable=True, index=True
        ),
        sa.Column("provider_subscription_item_id", sa.String(255), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "assigned_quantity >= 0 AND assigned_quantity <= total_quantity",
            name="ck_subscription_batches_seats",
        ),
    )

    op.create_table(
        "user_subscriptions",
        _id(),
        sa.Column("user_id", sa.String(255), nullable=False, index=True),
        sa.Column(
            "plan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscription_plans.id"),
            nullable=False,
        ),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column(
            "batch_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscription_batches.id"),
            nullable=True,
        ),
        sa.Column("assigned_by", sa.String(255), nullable=True),
        sa.Column(
            "provider_subscription_id", sa.String(255), nullable=True, index=True
        ),
        sa.Column("provider_customer_id", sa.String(255), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "replaces_subscription_id", postgresql.UUID(as_uuid=True), nullable=True
        ),
        *_timestamps(),
    )

    op.create_table(
        "organization_subscriptions",
        _id(),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id"),
            nullable=False,
        ),
        sa.Column(
            "plan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscription_plans.id"),
            nullable=False,
        ),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "provider_subscription_id", sa.String(255), nullable=True, index=True
        ),
        sa.Column("provider_customer_id", sa.String(255), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "uq_org_subscriptions_one_active",
        "organization_subscriptions",
        ["organization_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('active', 'trialing')"),
    )

    op.create_table(
        "usage_metrics",
        _id(),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("metric_type", sa.String(64), nullable=False),
        sa.Column("current_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("limit_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_reset", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "metric_type"),
    )

    op.create_table(
        "policies",
        _id(),
        sa.Column("subject", sa.String(255), nullable=False, index=True),
        sa.Column("object", sa.String(512), nullable=False),
        sa.Column("action", sa.String(128), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("subject", "object", "action"),
    )

    op.create_table(
        "groupings",
        _id(),
        sa.Column("user_id", sa.String(255), nullable=False, index=True),
        sa.Column("role", sa.String(255), nullable=False, index=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "role"),
    )

    op.create_table(
        "processed_payment_events",
        _id(),
        sa.Column("event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("processed_payment_events")
    op.drop_table("groupings")
    op.drop_table("policies")
    op.drop_table("usage_metrics")
    op.drop_index(
        "uq_org_subscriptions_one_active", table_name="organization_subscriptions"
    )
    op.drop_table("organization_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_batches")
    op.drop_table("group_members")
    op.drop_table("groups")
    op.drop_table("organization_members")
    op.drop_index("uq_organizations_owner_name_active", table_name="organizations")
    op.drop_table("organizations")
    op.drop_table("subscription_plans")
