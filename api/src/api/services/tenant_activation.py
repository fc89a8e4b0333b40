"""Subdomain activation after a completed checkout."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from billsync.errors import SideEffectFailure
from billsync.models import Subdomain, User
from billsync.models.subdomain import ACTIVATABLE_SUBDOMAIN_STATUSES
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.provisioning_client import provision_subdomain
from api.services.retry_queue import enqueue_retry

logger = logging.getLogger(__name__)


def checkout_customer_email(session: dict[str, Any]) -> str | None:
    email = session.get("customer_email") or (session.get("customer_details") or {}).get("email")
    email = str(email or "").strip().lower()
    return email or None


async def find_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(
        select(User).where(func.lower(User.email) == email.strip().lower()).limit(1)
    )
    return result.scalars().first()


async def find_activatable_subdomain(db: AsyncSession, organization_id) -> Subdomain | None:
    result = await db.execute(
        select(Subdomain)
        .where(
            Subdomain.organization_id == organization_id,
            Subdomain.status.in_(ACTIVATABLE_SUBDOMAIN_STATUSES),
        )
        .order_by(Subdomain.created_at.asc())
        .limit(1)
    )
    return result.scalars().first()


async def provision_and_activate(
    db: AsyncSession,
    record: Subdomain,
    *,
    owner_email: str | None,
) -> None:
    """Call the provisioning API and flip the subdomain to active on success."""
    await provision_subdomain(
        subdomain=record.subdomain,
        organization_id=record.organization_id,
        organization_name=record.organization_name,
        owner_email=owner_email,
    )
    now = datetime.now(UTC)
    record.status = "active"
    record.provisioned_at = now
    record.updated_at = now
    await db.flush()


async def activate_tenant_for_email(
    db: AsyncSession,
    email: str,
    *,
    session_id: str | None = None,
    enqueue_on_missing_user: bool = True,
) -> str:
    user = await find_user_by_email(db, email)
    if user is None:
        if not enqueue_on_missing_user:
            return "user_missing"
        logger.warning("No user for checkout email %s; queueing lookup retry", email)
        await enqueue_retry(
            db,
            "user_lookup",
            {"email": email, "session_id": session_id},
            dedupe_key=f"user_lookup:{email}",
        )
        return "user_lookup_queued"

    if not user.organization_id:
        logger.warning("User %s has no organization; nothing to activate", user.id)
        return "no_organization"

    record = await find_activatable_subdomain(db, user.organization_id)
    if record is None:
        logger.info("No activatable subdomain for organization %s", user.organization_id)
        return "no_subdomain"

    record.status = "provisioning"
    record.updated_at = datetime.now(UTC)
    await db.flush()

    try:
        await provision_and_activate(db, record, owner_email=email)
    except SideEffectFailure as exc:
        logger.warning(
            "Provisioning %s failed (retryable=%s): %s",
            record.subdomain,
            exc.retryable,
            exc,
        )
        await enqueue_retry(
            db,
            "dns_provisioning",
            {
                "subdomain_id": str(record.id),
                "subdomain": record.subdomain,
                "organization_id": str(record.organization_id),
                "owner_email": email,
                "error": str(exc),
            },
            dedupe_key=f"dns_provisioning:{record.id}",
        )
        return "provisioning_queued"

    logger.info("Subdomain %s activated for %s", record.subdomain, email)
    return "activated"


async def activate_tenant_after_checkout(db: AsyncSession, session: dict[str, Any]) -> str:
    """Activate the paying customer's pending subdomain.

    Provisioning failures are queued for retry and never propagate, so the
    webhook still acknowledges the event.
    """
    email = checkout_customer_email(session)
    if not email:
        logger.warning("Checkout session %s has no customer email", session.get("id"))
        return "no_email"
    return await activate_tenant_for_email(db, email, session_id=session.get("id"))
