"""Add promo redemptions and sync fences.

Revision ID: 002_redemptions_fences
Revises: 001_billing_sync
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

revision: str = "002_redemptions_fences"
down_revision: str | None = "001_billing_sync"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "promo_redemptions",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            primary_key=True,
        ),
        sa.Column("checkout_session_id", sa.Text(), nullable=False),
        sa.Column("promotion_ref", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.UniqueConstraint(
            "checkout_session_id",
            "promotion_ref",
            name="uq_promo_redemptions_session_ref",
        ),
    )

    op.create_table(
        "sync_fences",
        sa.Column("name", sa.Text(), primary_key=True),
        sa.Column("fence", sa.BigInteger(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )


def downgrade() -> None:
    op.drop_table("sync_fences")
    op.drop_table("promo_redemptions")
