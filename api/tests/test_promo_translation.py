"""Tests for Stripe coupon/promotion-code translation."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from api.services.promo_translation import (
    classify_discount,
    resolve_coupon,
    translate_coupon_event,
    translate_promotion_code,
)
from billsync.errors import InvalidEventPayload, TranslationAmbiguity


def test_percent_off_maps_to_percentage():
    terms = classify_discount({"id": "SAVE20", "percent_off": 20})
    assert terms.discount_type == "percentage"
    assert terms.discount_value == Decimal("20")
    assert terms.ambiguity is None


def test_amount_off_maps_to_fixed_major_units():
    terms = classify_discount({"id": "FIVE", "amount_off": 500, "currency": "USD"})
    assert terms.discount_type == "fixed"
    assert terms.discount_value == Decimal("5.00")
    assert terms.currency == "usd"


def test_percent_off_wins_over_amount_off():
    terms = classify_discount({"percent_off": 12.5, "amount_off": 500, "currency": "usd"})
    assert terms.discount_type == "percentage"
    assert terms.discount_value == Decimal("12.5")


def test_unknown_shape_is_custom_price_flagged_for_review():
    terms = classify_discount({"id": "WEIRD"})
    assert terms.discount_type == "custom_price"
    assert terms.discount_value is None
    assert isinstance(terms.ambiguity, TranslationAmbiguity)
    assert terms.ambiguity.coupon_id == "WEIRD"


def test_translate_promotion_code_maps_fields():
    promo = {
        "id": "promo_123",
        "code": " save20 ",
        "active": True,
        "max_redemptions": 100,
        "times_redeemed": 3,
        "expires_at": 1893456000,
        "coupon": {"id": "SAVE20", "percent_off": 20},
    }
    candidate = translate_promotion_code(promo, promo["coupon"])
    assert candidate.code == "SAVE20"
    assert candidate.discount_type == "percentage"
    assert candidate.discount_value == Decimal("20")
    assert candidate.max_uses == 100
    assert candidate.used_count == 3
    assert candidate.expires_at == datetime.fromtimestamp(1893456000, tz=UTC)
    assert candidate.is_active is True
    assert candidate.external_coupon_ref == "SAVE20"
    assert candidate.external_promotion_ref == "promo_123"
    assert candidate.needs_review is False


def test_translate_falls_back_to_coupon_id_and_defaults_active():
    candidate = translate_promotion_code({"id": "promo_9"}, {"id": "welcome10", "amount_off": 1000})
    assert candidate.code == "WELCOME10"
    assert candidate.is_active is True
    assert candidate.max_uses is None
    assert candidate.expires_at is None


def test_translate_ambiguous_coupon_sets_review_note():
    candidate = translate_promotion_code({"id": "promo_x", "code": "ODD"}, {"id": "odd"})
    assert candidate.discount_type == "custom_price"
    assert candidate.discount_value is None
    assert candidate.needs_review is True
    assert "custom_price" in candidate.notes


def test_translate_without_any_code_is_invalid():
    with pytest.raises(InvalidEventPayload):
        translate_promotion_code({"id": "promo_x"}, {"percent_off": 10})


def test_coupon_event_produces_no_record():
    assert translate_coupon_event({"id": "SAVE20", "percent_off": 20}) is None


@pytest.mark.asyncio
async def test_resolve_coupon_uses_embedded_object():
    coupon = {"id": "SAVE20", "percent_off": 20}
    with patch("api.services.promo_translation.retrieve_coupon", new=AsyncMock()) as fetch:
        assert await resolve_coupon({"coupon": coupon}) is coupon
    fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_resolve_coupon_uses_flattened_discount_fields():
    with patch("api.services.promo_translation.retrieve_coupon", new=AsyncMock()) as fetch:
        coupon = await resolve_coupon({"coupon": "SAVE5", "amount_off": 500, "currency": "usd"})
    assert coupon == {"id": "SAVE5", "percent_off": None, "amount_off": 500, "currency": "usd"}
    fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_resolve_coupon_fetches_bare_id():
    fetched = {"id": "SAVE20", "percent_off": 20}
    with patch(
        "api.services.promo_translation.retrieve_coupon",
        new=AsyncMock(return_value=fetched),
    ) as fetch:
        coupon = await resolve_coupon({"coupon": "SAVE20"})
    assert coupon == fetched
    fetch.assert_awaited_once_with("SAVE20")
