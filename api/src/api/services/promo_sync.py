"""Outbound promo push and the periodic promo reconciliation pass."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import stripe
from billsync.errors import ConfigurationError, InvalidEventPayload
from billsync.models import AnalyticsEvent, PromoCode
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.promo_reconciliation import upsert_promo_record
from api.services.promo_translation import resolve_coupon, translate_promotion_code
from api.services.stripe_service import (
    _get_stripe_client,
    create_coupon_and_promotion_code,
    retrieve_promotion_code,
)

logger = logging.getLogger(__name__)


def _coupon_terms(promo: PromoCode) -> dict[str, Any]:
    if promo.discount_type == "percentage":
        return {
            "percent_off": float(promo.discount_value or 0),
            "amount_off_cents": None,
            "currency": None,
        }
    if promo.discount_type == "fixed":
        cents = int((Decimal(promo.discount_value or 0) * 100).to_integral_value())
        return {
            "percent_off": None,
            "amount_off_cents": cents,
            "currency": promo.currency or "usd",
        }
    # custom_price promos are priced at checkout; the coupon just zeroes the list price.
    return {"percent_off": 100.0, "amount_off_cents": None, "currency": None}


async def push_pending_promo_codes(db: AsyncSession, *, trigger: str = "manual") -> dict[str, Any]:
    """Create Stripe coupons and promotion codes for locally created promos."""
    started_at = datetime.now(UTC)
    try:
        _get_stripe_client()
    except ConfigurationError as exc:
        return {"status": "skipped", "reason": str(exc), "trigger": trigger}

    result = await db.execute(
        select(PromoCode)
        .where(PromoCode.is_active.is_(True), PromoCode.sync_status.in_(("pending", "error")))
        .order_by(PromoCode.created_at.asc())
    )
    promos = result.scalars().all()

    pushed = 0
    failures = 0
    for promo in promos:
        try:
            refs = await create_coupon_and_promotion_code(
                code=promo.code,
                max_redemptions=promo.max_uses,
                expires_at=promo.expires_at,
                metadata={"promoCodeId": str(promo.id), "discountType": promo.discount_type},
                **_coupon_terms(promo),
            )
        except (stripe.StripeError, TimeoutError, ValueError) as exc:
            failures += 1
            promo.sync_status = "error"
            promo.sync_error = str(exc)[:500]
            promo.updated_at = datetime.now(UTC)
            logger.warning("Promo push failed for %s: %s", promo.code, exc)
            continue

        now = datetime.now(UTC)
        promo.external_coupon_ref = refs["stripe_coupon_id"]
        promo.external_promotion_ref = refs["stripe_promotion_code_id"]
        promo.sync_status = "synced"
        promo.synced_at = now
        promo.sync_error = None
        promo.updated_at = now
        pushed += 1

    summary = {
        "status": "ok",
        "trigger": trigger,
        "started_at": started_at.isoformat(),
        "finished_at": datetime.now(UTC).isoformat(),
        "scanned": len(promos),
        "pushed": pushed,
        "failures": failures,
    }
    db.add(AnalyticsEvent(event_type="promo.push.run", metadata_json=summary))
    return summary


async def reconcile_promo_codes(db: AsyncSession, *, trigger: str = "manual") -> dict[str, Any]:
    """Re-read every linked promotion code from Stripe and merge it locally."""
    started_at = datetime.now(UTC)
    try:
        _get_stripe_client()
    except ConfigurationError as exc:
        summary = {
            "status": "skipped",
            "reason": str(exc),
            "trigger": trigger,
            "started_at": started_at.isoformat(),
        }
        db.add(AnalyticsEvent(event_type="promo.reconciliation.skipped", metadata_json=summary))
        return summary

    result = await db.execute(
        select(PromoCode).where(PromoCode.external_promotion_ref.is_not(None))
    )
    promos = result.scalars().all()

    scanned = 0
    updated = 0
    missing = 0
    failures = 0

    for promo in promos:
        scanned += 1
        ref = str(promo.external_promotion_ref or "").strip()
        try:
            remote = await retrieve_promotion_code(ref)
            if remote is None:
                missing += 1
                logger.warning("Promotion code %s (%s) no longer exists in Stripe", ref, promo.code)
                continue
            coupon = await resolve_coupon(remote)
            candidate = translate_promotion_code(remote, coupon)
        except (stripe.StripeError, TimeoutError, InvalidEventPayload) as exc:
            failures += 1
            logger.warning("Promo reconciliation failed for %s: %s", ref, exc)
            continue

        await upsert_promo_record(db, candidate, refresh_usage=True)
        updated += 1

    summary = {
        "status": "ok",
        "trigger": trigger,
        "started_at": started_at.isoformat(),
        "finished_at": datetime.now(UTC).isoformat(),
        "scanned": scanned,
        "updated": updated,
        "missing": missing,
        "failures": failures,
    }
    db.add(AnalyticsEvent(event_type="promo.reconciliation.run", metadata_json=summary))
    return summary


async def promo_status_summary(db: AsyncSession) -> dict[str, Any]:
    active_result = await db.execute(
        select(PromoCode.is_active, func.count()).group_by(PromoCode.is_active)
    )
    sync_result = await db.execute(
        select(PromoCode.sync_status, func.count()).group_by(PromoCode.sync_status)
    )
    review_result = await db.execute(
        select(func.count()).select_from(PromoCode).where(PromoCode.needs_review.is_(True))
    )
    by_state = {("active" if is_active else "inactive"): int(n) for is_active, n in active_result.all()}
    by_sync = {str(status): int(n) for status, n in sync_result.all()}
    return {
        "by_state": by_state,
        "by_sync_status": by_sync,
        "needs_review": int(review_result.scalar() or 0),
    }
