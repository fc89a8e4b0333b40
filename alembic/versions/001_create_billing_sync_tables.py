"""Create billing sync tables.

Revision ID: 001_billing_sync
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

revision: str = "001_billing_sync"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("NOW()"),
    )


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("idx_users_email_lower", "users", [sa.text("lower(email)")])

    op.create_table(
        "promo_codes",
        _uuid_pk(),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_type", sa.Text(), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.Text(), nullable=True),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column("external_coupon_ref", sa.Text(), nullable=True),
        sa.Column("external_promotion_ref", sa.Text(), nullable=True, unique=True),
        sa.Column("sync_status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "discount_type IN ('percentage','fixed','custom_price')",
            name="ck_promo_code_discount_type",
        ),
        sa.CheckConstraint(
            "(discount_type = 'custom_price' AND discount_value IS NULL)"
            " OR (discount_type <> 'custom_price' AND discount_value IS NOT NULL)",
            name="ck_promo_code_discount_value",
        ),
        sa.CheckConstraint(
            "sync_status IN ('pending','synced','error')",
            name="ck_promo_code_sync_status",
        ),
        sa.CheckConstraint("max_uses IS NULL OR max_uses > 0", name="ck_promo_code_max_uses"),
    )
    op.create_index("idx_promo_codes_code_upper", "promo_codes", [sa.text("upper(code)")])
    op.create_index("idx_promo_codes_coupon_ref", "promo_codes", ["external_coupon_ref"])
    op.create_index("idx_promo_codes_sync_status", "promo_codes", ["sync_status", "is_active"])

    op.create_table(
        "webhook_retries",
        _uuid_pk(),
        sa.Column("retry_type", sa.Text(), nullable=False),
        sa.Column("payload", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("dedupe_key", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending','in_flight','completed','failed')",
            name="ck_webhook_retry_status",
        ),
        sa.CheckConstraint(
            "attempt_count >= 0 AND attempt_count <= max_attempts",
            name="ck_webhook_retry_attempts",
        ),
    )
    op.create_index(
        "idx_webhook_retries_due",
        "webhook_retries",
        ["status", "next_attempt_at", "created_at"],
    )
    op.create_index("idx_webhook_retries_dedupe", "webhook_retries", ["retry_type", "dedupe_key"])

    op.create_table(
        "subdomains",
        _uuid_pk(),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=False),
        sa.Column("subdomain", sa.Text(), nullable=False, unique=True),
        sa.Column("organization_name", sa.Text(), nullable=True),
        sa.Column(
            "status", sa.Text(), nullable=False, server_default=sa.text("'pending_payment'")
        ),
        sa.Column("provisioned_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('pending_payment','pending','inactive','provisioning','active','failed')",
            name="ck_subdomain_status",
        ),
    )
    op.create_index("idx_subdomains_org_status", "subdomains", ["organization_id", "status"])

    op.create_table(
        "subscriptions",
        _uuid_pk(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=True),
        sa.Column("stripe_customer_id", sa.Text(), nullable=False),
        sa.Column("stripe_subscription_id", sa.Text(), nullable=False, unique=True),
        sa.Column("plan_id", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")
        ),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('active','past_due','canceled','trialing',"
            "'incomplete','incomplete_expired','unpaid','paused')",
            name="ck_subscription_status",
        ),
    )
    op.create_index("idx_subscriptions_tenant", "subscriptions", ["tenant_id"])

    op.create_table(
        "catalog_products",
        sa.Column("local_id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("unit_amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default=sa.text("'usd'")),
        sa.Column(
            "billing_interval", sa.Text(), nullable=False, server_default=sa.text("'month'")
        ),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "billing_interval IN ('month','year','one_time')",
            name="ck_catalog_product_interval",
        ),
        sa.CheckConstraint("unit_amount_cents >= 0", name="ck_catalog_product_amount"),
    )

    op.create_table(
        "stripe_product_mappings",
        _uuid_pk(),
        sa.Column("local_product_id", sa.Text(), nullable=False, unique=True),
        sa.Column("local_product_name", sa.Text(), nullable=False),
        sa.Column("stripe_product_id", sa.Text(), nullable=True),
        sa.Column("stripe_price_id", sa.Text(), nullable=True),
        sa.Column("price_amount_cents", sa.Integer(), nullable=True),
        sa.Column("sync_status", sa.Text(), nullable=False),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.CheckConstraint(
            "sync_status IN ('created','updated','synced','error')",
            name="ck_stripe_product_mapping_status",
        ),
    )

    op.create_table(
        "analytics_events",
        _uuid_pk(),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp("created_at"),
    )
    op.create_index("idx_analytics_time", "analytics_events", ["created_at"])
    op.create_index("idx_analytics_type", "analytics_events", ["event_type", "created_at"])


def downgrade() -> None:
    op.drop_table("analytics_events")
    op.drop_table("stripe_product_mappings")
    op.drop_table("catalog_products")
    op.drop_table("subscriptions")
    op.drop_table("subdomains")
    op.drop_table("webhook_retries")
    op.drop_table("promo_codes")
    op.drop_table("users")
