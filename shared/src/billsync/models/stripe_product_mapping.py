"""Mapping between local catalog products and Stripe product/price ids."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from billsync.models.base import Base


class StripeProductMapping(Base):
    __tablename__ = "stripe_product_mappings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    local_product_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    local_product_name: Mapped[str] = mapped_column(Text, nullable=False)
    stripe_product_id: Mapped[str | None] = mapped_column(Text)
    stripe_price_id: Mapped[str | None] = mapped_column(Text)
    price_amount_cents: Mapped[int | None] = mapped_column(Integer)
    sync_status: Mapped[str] = mapped_column(Text, nullable=False)
    sync_error: Mapped[str | None] = mapped_column(Text)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("TRUE"))

    __table_args__ = (
        CheckConstraint(
            "sync_status IN ('created','updated','synced','error')",
            name="ck_stripe_product_mapping_status",
        ),
    )
