"""Translate Stripe coupon/promotion-code payloads into local promo candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from billsync.errors import InvalidEventPayload, TranslationAmbiguity

from api.services.stripe_service import retrieve_coupon

logger = logging.getLogger(__name__)

PROMO_EVENT_TYPES = frozenset(
    {"promotion_code.created", "promotion_code.updated", "coupon.created"}
)
PROMO_EVENT_PREFIXES = ("promotion_code.", "coupon.")
CENTS = Decimal("0.01")


@dataclass(frozen=True)
class DiscountTerms:
    discount_type: str
    discount_value: Decimal | None
    currency: str | None = None
    ambiguity: TranslationAmbiguity | None = None


@dataclass(frozen=True)
class PromoCandidate:
    code: str
    discount_type: str
    discount_value: Decimal | None
    currency: str | None
    max_uses: int | None
    used_count: int
    expires_at: datetime | None
    is_active: bool
    external_coupon_ref: str | None
    external_promotion_ref: str | None
    needs_review: bool = False
    notes: str | None = None


def normalize_promo_code(raw: Any) -> str:
    return str(raw or "").strip().upper()


def is_promo_event(event_type: str) -> bool:
    return event_type.startswith(PROMO_EVENT_PREFIXES)


def _as_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OSError):
        return None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def classify_discount(coupon: dict[str, Any]) -> DiscountTerms:
    """Map a coupon's discount fields onto a local discount type.

    ``percent_off`` wins over ``amount_off``. A coupon carrying neither is
    kept as ``custom_price`` and flagged for review rather than dropped.
    """
    percent_off = coupon.get("percent_off")
    if percent_off is not None:
        try:
            value = Decimal(str(percent_off))
        except InvalidOperation as exc:
            raise InvalidEventPayload(f"Unparseable percent_off: {percent_off!r}") from exc
        return DiscountTerms("percentage", value)

    amount_off = coupon.get("amount_off")
    if amount_off is not None:
        cents = _as_int(amount_off)
        if cents is None:
            raise InvalidEventPayload(f"Unparseable amount_off: {amount_off!r}")
        currency = str(coupon.get("currency") or "").strip().lower() or None
        return DiscountTerms("fixed", (Decimal(cents) / 100).quantize(CENTS), currency)

    coupon_id = str(coupon.get("id") or "").strip() or None
    ambiguity = TranslationAmbiguity(
        "Coupon has neither percent_off nor amount_off; stored as custom_price",
        coupon_id=coupon_id,
    )
    return DiscountTerms("custom_price", None, ambiguity=ambiguity)


def translate_promotion_code(
    promotion_code: dict[str, Any],
    coupon: dict[str, Any],
) -> PromoCandidate:
    code = normalize_promo_code(promotion_code.get("code") or coupon.get("id"))
    if not code:
        raise InvalidEventPayload("Promotion code has neither code nor coupon id")

    terms = classify_discount(coupon)
    notes = None
    if terms.ambiguity is not None:
        notes = str(terms.ambiguity)
        logger.warning("Promo %s needs review: %s", code, notes)

    active = promotion_code.get("active")
    return PromoCandidate(
        code=code,
        discount_type=terms.discount_type,
        discount_value=terms.discount_value,
        currency=terms.currency,
        max_uses=_as_int(promotion_code.get("max_redemptions")),
        used_count=_as_int(promotion_code.get("times_redeemed")) or 0,
        expires_at=_as_datetime(promotion_code.get("expires_at")),
        is_active=True if active is None else bool(active),
        external_coupon_ref=str(coupon.get("id") or "").strip() or None,
        external_promotion_ref=str(promotion_code.get("id") or "").strip() or None,
        needs_review=terms.ambiguity is not None,
        notes=notes,
    )


def translate_coupon_event(coupon: dict[str, Any]) -> None:
    """A bare coupon is not customer-facing; its promotion code event creates the record."""
    logger.info(
        "Coupon %s created; waiting for a promotion code before recording it",
        coupon.get("id"),
    )
    return None


async def resolve_coupon(promotion_code: dict[str, Any]) -> dict[str, Any]:
    """Return the coupon behind a promotion code payload.

    Handles an embedded coupon object, a flattened payload carrying the
    discount fields next to a coupon id, and a bare coupon id (fetched
    from Stripe).
    """
    coupon = promotion_code.get("coupon")
    if isinstance(coupon, dict):
        return coupon

    coupon_id = str(coupon or "").strip()
    if not coupon_id:
        raise InvalidEventPayload("Promotion code payload has no coupon")

    if promotion_code.get("percent_off") is not None or promotion_code.get("amount_off") is not None:
        return {
            "id": coupon_id,
            "percent_off": promotion_code.get("percent_off"),
            "amount_off": promotion_code.get("amount_off"),
            "currency": promotion_code.get("currency"),
        }

    return await retrieve_coupon(coupon_id)
