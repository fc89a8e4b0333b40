"""Keyed promo upserts and the webhook event dispatcher."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import stripe
from billsync.errors import ReconciliationError, StoreWriteError
from billsync.models import AnalyticsEvent, PromoCode, PromoRedemption
from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.promo_translation import (
    PROMO_EVENT_TYPES,
    PromoCandidate,
    is_promo_event,
    resolve_coupon,
    translate_coupon_event,
    translate_promotion_code,
)
from api.services.stripe_service import VerifiedEvent
from api.services.subscription_sync import SUBSCRIPTION_EVENT_TYPES, apply_subscription_event
from api.services.tenant_activation import activate_tenant_after_checkout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertOutcome:
    action: str
    record: PromoCode


@dataclass(frozen=True)
class ReconcileOutcome:
    processed: bool
    action: str


async def _find_existing(
    db: AsyncSession,
    candidate: PromoCandidate,
) -> tuple[PromoCode | None, PromoCode | None]:
    """Return the row to merge into and, if different, the row already holding the ref.

    A code match wins. When another row owns the candidate's promotion
    ref, that row is returned second so the merge can leave the ref alone.
    """
    conditions = [func.upper(PromoCode.code) == candidate.code]
    if candidate.external_promotion_ref:
        conditions.append(PromoCode.external_promotion_ref == candidate.external_promotion_ref)
    result = await db.execute(select(PromoCode).where(or_(*conditions)))
    rows = list(result.scalars().all())
    by_code = next((row for row in rows if str(row.code or "").upper() == candidate.code), None)
    by_ref = next(
        (
            row
            for row in rows
            if candidate.external_promotion_ref
            and row.external_promotion_ref == candidate.external_promotion_ref
        ),
        None,
    )
    if by_code is None:
        return by_ref, None
    if by_ref is not None and by_ref is not by_code:
        return by_code, by_ref
    return by_code, None


def _merge(
    record: PromoCode,
    candidate: PromoCandidate,
    now: datetime,
    *,
    ref_owner: PromoCode | None = None,
    refresh_usage: bool = False,
) -> None:
    # Provider-owned fields only; description and discount terms stay local.
    if candidate.external_coupon_ref:
        record.external_coupon_ref = candidate.external_coupon_ref
    if candidate.external_promotion_ref:
        if ref_owner is None:
            record.external_promotion_ref = candidate.external_promotion_ref
        else:
            record.needs_review = True
            record.notes = (
                f"Promotion code {candidate.external_promotion_ref} is already linked "
                f"to promo {ref_owner.code}"
            )
            logger.warning(
                "Promo %s matches by code but %s belongs to %s; flagged for review",
                candidate.code,
                candidate.external_promotion_ref,
                ref_owner.code,
            )
    record.is_active = candidate.is_active
    record.max_uses = candidate.max_uses
    record.expires_at = candidate.expires_at
    if refresh_usage:
        record.used_count = candidate.used_count
    record.sync_status = "synced"
    record.synced_at = now
    record.sync_error = None
    record.updated_at = now


def _new_record(candidate: PromoCandidate, now: datetime) -> PromoCode:
    return PromoCode(
        code=candidate.code,
        discount_type=candidate.discount_type,
        discount_value=candidate.discount_value,
        currency=candidate.currency,
        max_uses=candidate.max_uses,
        used_count=candidate.used_count,
        expires_at=candidate.expires_at,
        is_active=candidate.is_active,
        external_coupon_ref=candidate.external_coupon_ref,
        external_promotion_ref=candidate.external_promotion_ref,
        sync_status="synced",
        synced_at=now,
        sync_error=None,
        needs_review=candidate.needs_review,
        notes=candidate.notes,
        created_by="stripe_webhook",
        created_at=now,
        updated_at=now,
    )


async def upsert_promo_record(
    db: AsyncSession,
    candidate: PromoCandidate,
    *,
    now: datetime | None = None,
    refresh_usage: bool = False,
) -> UpsertOutcome:
    """Insert or merge a promo record keyed by code or promotion code ref.

    A lost insert race is resolved by re-reading the winner and merging into
    it. Any other datastore failure surfaces as ``StoreWriteError``.
    ``refresh_usage`` copies the provider's redemption count onto an
    existing row; only the reconciliation pass sets it.
    """
    current = now or datetime.now(UTC)
    try:
        existing, ref_owner = await _find_existing(db, candidate)
        if existing is not None:
            _merge(existing, candidate, current, ref_owner=ref_owner, refresh_usage=refresh_usage)
            await db.flush()
            return UpsertOutcome("updated", existing)

        record = _new_record(candidate, current)
        try:
            async with db.begin_nested():
                db.add(record)
                await db.flush()
        except IntegrityError:
            logger.info("Promo %s inserted concurrently; merging instead", candidate.code)
            existing, ref_owner = await _find_existing(db, candidate)
            if existing is None:
                raise StoreWriteError(
                    f"Promo {candidate.code} conflicted on insert but could not be re-read"
                )
            _merge(existing, candidate, current, ref_owner=ref_owner, refresh_usage=refresh_usage)
            await db.flush()
            return UpsertOutcome("updated", existing)
        return UpsertOutcome("inserted", record)
    except SQLAlchemyError as exc:
        raise StoreWriteError(f"Failed to write promo {candidate.code}: {exc}") from exc


def _applied_promotion_codes(session: dict[str, Any]) -> list[str]:
    refs: list[str] = []
    for discount in session.get("discounts") or []:
        if isinstance(discount, dict) and discount.get("promotion_code"):
            refs.append(str(discount["promotion_code"]))
    breakdown = (session.get("total_details") or {}).get("breakdown") or {}
    for item in breakdown.get("discounts") or []:
        discount = item.get("discount") if isinstance(item, dict) else None
        promo_ref = discount.get("promotion_code") if isinstance(discount, dict) else None
        if isinstance(promo_ref, dict):
            promo_ref = promo_ref.get("id")
        if promo_ref:
            refs.append(str(promo_ref))
    return sorted(set(refs))


def build_redemption_insert(session_id: str, refs: list[str]):
    """INSERT one redemption per ref, skipping pairs already recorded; returns the new refs."""
    return (
        pg_insert(PromoRedemption)
        .values([{"checkout_session_id": session_id, "promotion_ref": ref} for ref in refs])
        .on_conflict_do_nothing(index_elements=["checkout_session_id", "promotion_ref"])
        .returning(PromoRedemption.promotion_ref)
    )


async def track_promo_usage(db: AsyncSession, session: dict[str, Any]) -> int:
    """Bump ``used_count`` once per promotion code applied to a checkout session.

    Each (session, ref) pair is recorded first, so a redelivered
    ``checkout.session.completed`` increments nothing.
    """
    refs = _applied_promotion_codes(session)
    if not refs:
        return 0
    session_id = str(session.get("id") or "").strip()
    if not session_id:
        logger.warning("Checkout session without id applied %s; usage not tracked", refs)
        return 0
    try:
        async with db.begin_nested():
            recorded = await db.execute(build_redemption_insert(session_id, refs))
            new_refs = sorted(str(ref) for ref in recorded.scalars().all())
            if not new_refs:
                logger.info("Promo usage for checkout %s already recorded", session_id)
                return 0
            result = await db.execute(
                update(PromoCode)
                .where(PromoCode.external_promotion_ref.in_(new_refs))
                .values(used_count=PromoCode.used_count + 1, updated_at=datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError:
        logger.exception("Failed to track promo usage for checkout %s", session_id)
        return 0
    return int(result.rowcount or 0)


async def _reconcile_promo_event(db: AsyncSession, event: VerifiedEvent) -> ReconcileOutcome:
    if event.type not in PROMO_EVENT_TYPES:
        logger.info("Promo event %s acknowledged without changes", event.type)
        return ReconcileOutcome(False, "ignored")

    if event.type == "coupon.created":
        translate_coupon_event(event.object)
        return ReconcileOutcome(True, "deferred")

    try:
        coupon = await resolve_coupon(event.object)
    except (stripe.StripeError, TimeoutError) as exc:
        raise ReconciliationError(
            f"Could not resolve coupon for promotion code {event.object.get('id')}: {exc}"
        ) from exc
    candidate = translate_promotion_code(event.object, coupon)
    outcome = await upsert_promo_record(db, candidate)
    logger.info("Promo %s %s from %s", candidate.code, outcome.action, event.type)
    return ReconcileOutcome(True, outcome.action)


async def reconcile_event(db: AsyncSession, event: VerifiedEvent) -> ReconcileOutcome:
    """Route a verified Stripe event to the reconciler that owns it."""
    if is_promo_event(event.type):
        outcome = await _reconcile_promo_event(db, event)
    elif event.type == "checkout.session.completed":
        await track_promo_usage(db, event.object)
        action = await activate_tenant_after_checkout(db, event.object)
        outcome = ReconcileOutcome(True, action)
    elif event.type in SUBSCRIPTION_EVENT_TYPES:
        action = await apply_subscription_event(db, event.type, event.object)
        outcome = ReconcileOutcome(True, action)
    else:
        logger.info("Unhandled Stripe event type: %s", event.type)
        return ReconcileOutcome(False, "ignored")

    if outcome.processed:
        db.add(
            AnalyticsEvent(
                event_type="stripe.webhook.processed",
                metadata_json={
                    "event_id": event.id,
                    "event_type": event.type,
                    "action": outcome.action,
                },
            )
        )
    return outcome
