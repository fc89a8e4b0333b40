"""Tenant subdomains activated after payment."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from billsync.models.base import Base

ACTIVATABLE_SUBDOMAIN_STATUSES = ("pending_payment", "pending", "inactive")


class Subdomain(Base):
    __tablename__ = "subdomains"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    subdomain: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    organization_name: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, server_default=text("'pending_payment'")
    )
    provisioned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_payment','pending','inactive','provisioning','active','failed')",
            name="ck_subdomain_status",
        ),
        Index("idx_subdomains_org_status", "organization_id", "status"),
    )
