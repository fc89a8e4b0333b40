"""Stripe SDK wrapper: webhook verification and bounded API calls."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

import stripe
from billsync.config import get_settings
from billsync.errors import AuthenticationError, ConfigurationError, InvalidEventPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedEvent:
    id: str
    type: str
    object: dict[str, Any] = field(default_factory=dict)
    created: int | None = None


def _get_stripe_client(*, require_secret_key: bool = True):
    settings = get_settings()
    if require_secret_key and not settings.stripe_secret_key:
        raise ConfigurationError("Stripe is not configured")
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
    return stripe


def to_plain_dict(obj: Any) -> dict[str, Any]:
    """Convert a StripeObject (or plain dict) into nested plain dicts."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return json.loads(str(obj))


async def call_stripe(func: Callable[..., Any], *args: Any, timeout: float | None = None, **kwargs: Any) -> Any:
    """Run a blocking Stripe SDK call in a worker thread, bounded by a timeout."""
    if timeout is None:
        timeout = float(get_settings().stripe_timeout_seconds)
    return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)


def verify_webhook_event(
    payload: bytes,
    signature_header: str | None,
    *,
    webhook_secret: str,
    tolerance_seconds: int = 300,
) -> VerifiedEvent:
    """Verify the Stripe-Signature header over the raw body and parse the envelope.

    Nothing is parsed or written before the signature checks out. The SDK
    compares signatures in constant time and rejects timestamps older than
    ``tolerance_seconds``.
    """
    header = str(signature_header or "").strip()
    if not header:
        raise AuthenticationError("Missing Stripe-Signature header")
    secret = str(webhook_secret or "").strip()
    if not secret:
        raise ConfigurationError("Stripe webhook secret is not configured")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise AuthenticationError("Webhook body is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise AuthenticationError("Invalid webhook signature") from exc

    try:
        envelope = json.loads(body)
    except ValueError as exc:
        raise InvalidEventPayload("Webhook body is not valid JSON") from exc
    if not isinstance(envelope, dict):
        raise InvalidEventPayload("Webhook envelope must be an object")

    event_type = str(envelope.get("type") or "").strip()
    data = envelope.get("data")
    if not event_type or not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise InvalidEventPayload("Webhook envelope is missing type or data.object")

    created = envelope.get("created")
    return VerifiedEvent(
        id=str(envelope.get("id") or "").strip(),
        type=event_type,
        object=data["object"],
        created=int(created) if isinstance(created, int) else None,
    )


async def retrieve_coupon(coupon_id: str) -> dict[str, Any]:
    stripe_client = _get_stripe_client()
    coupon = await call_stripe(stripe_client.Coupon.retrieve, coupon_id)
    return to_plain_dict(coupon)


async def retrieve_promotion_code(promotion_code_id: str) -> dict[str, Any] | None:
    """Fetch a promotion code with its coupon expanded, or None if Stripe no longer has it."""
    stripe_client = _get_stripe_client()
    try:
        promo = await call_stripe(
            stripe_client.PromotionCode.retrieve,
            promotion_code_id,
            expand=["coupon"],
        )
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", None) == "resource_missing":
            return None
        raise
    return to_plain_dict(promo)


async def create_coupon_and_promotion_code(
    *,
    code: str,
    percent_off: float | None,
    amount_off_cents: int | None,
    currency: str | None,
    max_redemptions: int | None,
    expires_at: datetime | None,
    duration: str = "once",
    metadata: dict[str, str] | None = None,
) -> dict[str, str]:
    """Create a Stripe coupon + promotion code pair."""
    stripe_client = _get_stripe_client()
    coupon_payload: dict[str, object] = {"duration": duration, "name": code}
    if percent_off is not None:
        coupon_payload["percent_off"] = percent_off
    elif amount_off_cents is not None and currency:
        coupon_payload["amount_off"] = amount_off_cents
        coupon_payload["currency"] = currency
    else:
        raise ValueError("Either percent_off or amount_off_cents/currency is required")
    if metadata:
        coupon_payload["metadata"] = metadata

    coupon = await call_stripe(stripe_client.Coupon.create, **coupon_payload)
    promo_payload: dict[str, object] = {"coupon": coupon["id"], "code": code, "active": True}
    if max_redemptions is not None:
        promo_payload["max_redemptions"] = max_redemptions
    if expires_at is not None:
        normalized = (
            expires_at.astimezone(UTC)
            if expires_at.tzinfo
            else expires_at.replace(tzinfo=UTC)
        )
        promo_payload["expires_at"] = int(normalized.timestamp())
    if metadata:
        promo_payload["metadata"] = metadata

    promotion_code = await call_stripe(stripe_client.PromotionCode.create, **promo_payload)
    return {
        "stripe_coupon_id": str(coupon["id"]),
        "stripe_promotion_code_id": str(promotion_code["id"]),
    }


async def retrieve_product(product_id: str) -> dict[str, Any] | None:
    """Fetch a Stripe product, returning None when it no longer exists."""
    stripe_client = _get_stripe_client()
    try:
        product = await call_stripe(stripe_client.Product.retrieve, product_id)
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", None) == "resource_missing":
            return None
        raise
    return to_plain_dict(product)


async def retrieve_price(price_id: str) -> dict[str, Any] | None:
    stripe_client = _get_stripe_client()
    try:
        price = await call_stripe(stripe_client.Price.retrieve, price_id)
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", None) == "resource_missing":
            return None
        raise
    return to_plain_dict(price)


async def create_product_with_price(
    *,
    name: str,
    description: str | None,
    unit_amount_cents: int,
    currency: str,
    billing_interval: str,
    metadata: dict[str, str],
) -> dict[str, str]:
    stripe_client = _get_stripe_client()
    product_payload: dict[str, object] = {"name": name, "metadata": metadata}
    if description:
        product_payload["description"] = description
    product = await call_stripe(stripe_client.Product.create, **product_payload)
    price = await create_price(
        product_id=str(product["id"]),
        unit_amount_cents=unit_amount_cents,
        currency=currency,
        billing_interval=billing_interval,
        metadata=metadata,
    )
    return {"stripe_product_id": str(product["id"]), "stripe_price_id": price}


async def create_price(
    *,
    product_id: str,
    unit_amount_cents: int,
    currency: str,
    billing_interval: str,
    metadata: dict[str, str],
) -> str:
    stripe_client = _get_stripe_client()
    price_payload: dict[str, object] = {
        "product": product_id,
        "unit_amount": unit_amount_cents,
        "currency": currency,
        "metadata": metadata,
    }
    if billing_interval != "one_time":
        price_payload["recurring"] = {"interval": billing_interval}
    price = await call_stripe(stripe_client.Price.create, **price_payload)
    return str(price["id"])


async def modify_product(product_id: str, **fields: Any) -> None:
    stripe_client = _get_stripe_client()
    await call_stripe(stripe_client.Product.modify, product_id, **fields)


async def deactivate_price(price_id: str) -> None:
    stripe_client = _get_stripe_client()
    await call_stripe(stripe_client.Price.modify, price_id, active=False)
