"""Promo codes reconciled against Stripe coupons and promotion codes."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from billsync.models.base import Base

DISCOUNT_TYPES = ("percentage", "fixed", "custom_price")
SYNC_STATUSES = ("pending", "synced", "error")


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    discount_type: Mapped[str] = mapped_column(Text, nullable=False)
    discount_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    currency: Mapped[str | None] = mapped_column(Text)
    max_uses: Mapped[int | None] = mapped_column(Integer)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("TRUE"))
    external_coupon_ref: Mapped[str | None] = mapped_column(Text)
    external_promotion_ref: Mapped[str | None] = mapped_column(Text, unique=True)
    sync_status: Mapped[str] = mapped_column(
        Text, nullable=False, server_default=text("'pending'")
    )
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sync_error: Mapped[str | None] = mapped_column(Text)
    needs_review: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        CheckConstraint(
            "discount_type IN ('percentage','fixed','custom_price')",
            name="ck_promo_code_discount_type",
        ),
        CheckConstraint(
            "(discount_type = 'custom_price' AND discount_value IS NULL)"
            " OR (discount_type <> 'custom_price' AND discount_value IS NOT NULL)",
            name="ck_promo_code_discount_value",
        ),
        CheckConstraint(
            "sync_status IN ('pending','synced','error')",
            name="ck_promo_code_sync_status",
        ),
        CheckConstraint(
            "max_uses IS NULL OR max_uses > 0",
            name="ck_promo_code_max_uses",
        ),
        Index("idx_promo_codes_code_upper", func.upper(text("code"))),
        Index("idx_promo_codes_coupon_ref", "external_coupon_ref"),
        Index("idx_promo_codes_sync_status", "sync_status", "is_active"),
    )
