"""Subscription state sync from Stripe subscription and invoice events."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from billsync.models import Subscription
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
    }
)


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def _as_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OSError):
        return None


async def _get_subscription(db: AsyncSession, stripe_sub_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_sub_id)
    )
    return result.scalars().first()


async def upsert_subscription(db: AsyncSession, stripe_sub: dict[str, Any]) -> str:
    """Create or update a local Subscription record from Stripe data."""
    stripe_sub_id = str(stripe_sub.get("id") or "").strip()
    metadata = stripe_sub.get("metadata") or {}
    plan_id = str(metadata.get("planId") or "").strip()
    if not stripe_sub_id or not plan_id:
        logger.error("Subscription %s has no planId in metadata; skipping", stripe_sub_id)
        return "skipped"

    sub = await _get_subscription(db, stripe_sub_id)
    action = "updated"
    if not sub:
        sub = Subscription(
            stripe_customer_id=str(stripe_sub.get("customer") or ""),
            stripe_subscription_id=stripe_sub_id,
            plan_id=plan_id,
            status=str(stripe_sub.get("status") or "incomplete"),
        )
        db.add(sub)
        action = "created"

    tenant_id = _parse_uuid(metadata.get("tenantId"))
    if tenant_id is not None:
        sub.tenant_id = tenant_id
    sub.plan_id = plan_id
    sub.status = stripe_sub.get("status", sub.status)
    sub.cancel_at_period_end = bool(stripe_sub.get("cancel_at_period_end", False))

    period_start = _as_datetime(stripe_sub.get("current_period_start"))
    if period_start:
        sub.current_period_start = period_start
    period_end = _as_datetime(stripe_sub.get("current_period_end"))
    if period_end:
        sub.current_period_end = period_end
    trial_end = _as_datetime(stripe_sub.get("trial_end"))
    if trial_end:
        sub.trial_end = trial_end
    canceled_at = _as_datetime(stripe_sub.get("canceled_at"))
    if canceled_at:
        sub.canceled_at = canceled_at

    sub.updated_at = datetime.now(UTC)
    await db.flush()
    return action


async def cancel_subscription(db: AsyncSession, stripe_sub: dict[str, Any]) -> str:
    stripe_sub_id = str(stripe_sub.get("id") or "").strip()
    sub = await _get_subscription(db, stripe_sub_id) if stripe_sub_id else None
    if not sub:
        logger.warning("Canceled subscription %s is not tracked locally", stripe_sub_id)
        return "skipped"
    now = datetime.now(UTC)
    sub.status = "canceled"
    sub.canceled_at = _as_datetime(stripe_sub.get("canceled_at")) or now
    sub.updated_at = now
    return "canceled"


async def apply_invoice_outcome(db: AsyncSession, invoice: dict[str, Any], *, paid: bool) -> str:
    sub_id = str(invoice.get("subscription") or "").strip()
    if not sub_id:
        return "skipped"
    sub = await _get_subscription(db, sub_id)
    if not sub:
        logger.warning("Invoice %s references unknown subscription %s", invoice.get("id"), sub_id)
        return "skipped"
    now = datetime.now(UTC)
    if paid:
        sub.status = "active"
        sub.last_payment_at = now
    else:
        sub.status = "past_due"
    sub.updated_at = now
    return "payment_succeeded" if paid else "payment_failed"


async def apply_subscription_event(db: AsyncSession, event_type: str, data: dict[str, Any]) -> str:
    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        return await upsert_subscription(db, data)
    if event_type == "customer.subscription.deleted":
        return await cancel_subscription(db, data)
    if event_type == "invoice.payment_succeeded":
        return await apply_invoice_outcome(db, data, paid=True)
    if event_type == "invoice.payment_failed":
        return await apply_invoice_outcome(db, data, paid=False)
    logger.info("Subscription sync ignores %s", event_type)
    return "ignored"
