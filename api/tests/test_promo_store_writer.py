"""Tests for the keyed promo upsert."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from api.services.promo_reconciliation import (
    build_redemption_insert,
    track_promo_usage,
    upsert_promo_record,
)
from api.services.promo_translation import PromoCandidate
from billsync.errors import StoreWriteError
from billsync.models import PromoCode
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, SQLAlchemyError


def _candidate(**overrides) -> PromoCandidate:
    values = {
        "code": "SAVE20",
        "discount_type": "percentage",
        "discount_value": Decimal("20"),
        "currency": None,
        "max_uses": 50,
        "used_count": 0,
        "expires_at": None,
        "is_active": True,
        "external_coupon_ref": "SAVE20",
        "external_promotion_ref": "promo_123",
    }
    values.update(overrides)
    return PromoCandidate(**values)


def _rows(*records) -> MagicMock:
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(records)
    return result


def _existing(**overrides) -> PromoCode:
    values = {
        "code": "SAVE20",
        "description": "Curated locally",
        "discount_type": "percentage",
        "discount_value": Decimal("20.00"),
        "is_active": True,
        "used_count": 7,
        "sync_status": "synced",
        "synced_at": datetime(2026, 1, 1, tzinfo=UTC),
        "external_coupon_ref": "SAVE20",
        "external_promotion_ref": "promo_123",
    }
    values.update(overrides)
    return PromoCode(**values)


@pytest.mark.asyncio
async def test_insert_when_no_record_exists(mock_db):
    now = datetime(2026, 3, 1, tzinfo=UTC)
    outcome = await upsert_promo_record(mock_db, _candidate(), now=now)

    assert outcome.action == "inserted"
    record = mock_db.add.call_args.args[0]
    assert isinstance(record, PromoCode)
    assert record.code == "SAVE20"
    assert record.discount_value == Decimal("20")
    assert record.sync_status == "synced"
    assert record.synced_at == now
    assert record.created_by == "stripe_webhook"
    mock_db.begin_nested.assert_called_once()


@pytest.mark.asyncio
async def test_replay_merges_and_advances_synced_at(mock_db):
    record = _existing()
    mock_db.execute.return_value = _rows(record)
    later = datetime(2026, 3, 2, tzinfo=UTC)

    outcome = await upsert_promo_record(
        mock_db,
        _candidate(is_active=False, discount_value=Decimal("99")),
        now=later,
    )

    assert outcome.action == "updated"
    assert outcome.record is record
    assert record.is_active is False
    assert record.synced_at == later
    assert record.discount_value == Decimal("20.00")
    assert record.description == "Curated locally"
    assert record.used_count == 7
    mock_db.add.assert_not_called()


@pytest.mark.asyncio
async def test_code_match_wins_but_ref_owned_elsewhere_is_flagged(mock_db):
    by_ref = _existing(code="OLDCODE")
    by_code = _existing(code="save20", external_promotion_ref=None, needs_review=False)
    mock_db.execute.return_value = _rows(by_ref, by_code)

    outcome = await upsert_promo_record(mock_db, _candidate(is_active=False))

    assert outcome.record is by_code
    assert by_code.external_promotion_ref is None
    assert by_ref.external_promotion_ref == "promo_123"
    assert by_code.needs_review is True
    assert "OLDCODE" in by_code.notes
    assert by_code.is_active is False


@pytest.mark.asyncio
async def test_ref_match_is_used_when_code_changed(mock_db):
    by_ref = _existing(code="OLDCODE", external_promotion_ref="promo_123")
    mock_db.execute.return_value = _rows(by_ref)

    outcome = await upsert_promo_record(mock_db, _candidate(max_uses=75))

    assert outcome.action == "updated"
    assert outcome.record is by_ref
    assert by_ref.max_uses == 75
    assert by_ref.code == "OLDCODE"


@pytest.mark.asyncio
async def test_merge_clears_previous_sync_error(mock_db):
    record = _existing(sync_status="error", sync_error="boom")
    mock_db.execute.return_value = _rows(record)

    await upsert_promo_record(mock_db, _candidate(expires_at=datetime.now(UTC) + timedelta(days=3)))

    assert record.sync_status == "synced"
    assert record.sync_error is None
    assert record.expires_at is not None


@pytest.mark.asyncio
async def test_lost_insert_race_merges_into_winner(mock_db):
    winner = _existing(is_active=True)
    mock_db.execute.side_effect = [_rows(), _rows(winner)]
    mock_db.flush.side_effect = [IntegrityError("INSERT", {}, Exception("duplicate key")), None]

    outcome = await upsert_promo_record(mock_db, _candidate(is_active=False))

    assert outcome.action == "updated"
    assert outcome.record is winner
    assert winner.is_active is False


@pytest.mark.asyncio
async def test_datastore_failure_becomes_store_write_error(mock_db):
    mock_db.execute.side_effect = SQLAlchemyError("connection reset")

    with pytest.raises(StoreWriteError):
        await upsert_promo_record(mock_db, _candidate())


@pytest.mark.asyncio
async def test_reconciliation_refresh_copies_redemption_count(mock_db):
    record = _existing(used_count=2)
    mock_db.execute.return_value = _rows(record)

    await upsert_promo_record(mock_db, _candidate(used_count=9), refresh_usage=True)

    assert record.used_count == 9


@pytest.mark.asyncio
async def test_checkout_usage_counts_each_session_once(mock_db):
    session = {"id": "cs_1", "discounts": [{"promotion_code": "promo_1"}]}
    first_insert = MagicMock()
    first_insert.scalars.return_value.all.return_value = ["promo_1"]
    bumped = MagicMock()
    bumped.rowcount = 1
    replay_insert = MagicMock()
    replay_insert.scalars.return_value.all.return_value = []
    mock_db.execute.side_effect = [first_insert, bumped, replay_insert]

    first = await track_promo_usage(mock_db, session)
    replay = await track_promo_usage(mock_db, session)

    assert first == 1
    assert replay == 0
    assert mock_db.execute.await_count == 3
    updates = [
        call.args[0]
        for call in mock_db.execute.await_args_list
        if "used_count" in str(call.args[0])
    ]
    assert len(updates) == 1


def test_redemption_insert_skips_recorded_pairs():
    sql = str(
        build_redemption_insert("cs_1", ["promo_1", "promo_2"]).compile(
            dialect=postgresql.dialect()
        )
    )

    assert "INSERT INTO promo_redemptions" in sql
    assert "ON CONFLICT (checkout_session_id, promotion_ref) DO NOTHING" in sql
    assert "RETURNING promo_redemptions.promotion_ref" in sql


@pytest.mark.asyncio
async def test_checkout_without_session_id_is_not_counted(mock_db):
    tracked = await track_promo_usage(mock_db, {"discounts": [{"promotion_code": "promo_1"}]})

    assert tracked == 0
    mock_db.execute.assert_not_awaited()
