"""Tests for subscription and invoice event handling."""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock

import pytest
from api.services.subscription_sync import apply_subscription_event
from billsync.models import Subscription


def _found(sub):
    result = MagicMock()
    result.scalars.return_value.first.return_value = sub
    return result


def _existing(status: str = "active") -> Subscription:
    return Subscription(
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
        plan_id="pro",
        status=status,
    )


@pytest.mark.asyncio
async def test_created_event_inserts_subscription(mock_db):
    tenant_id = uuid.uuid4()
    action = await apply_subscription_event(
        mock_db,
        "customer.subscription.created",
        {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "trialing",
            "current_period_end": 1767225600,
            "metadata": {"planId": "pro", "tenantId": str(tenant_id)},
        },
    )

    assert action == "created"
    [sub] = [call.args[0] for call in mock_db.add.call_args_list]
    assert sub.status == "trialing"
    assert sub.tenant_id == tenant_id
    assert sub.current_period_end is not None


@pytest.mark.asyncio
async def test_subscription_without_plan_is_skipped(mock_db):
    action = await apply_subscription_event(
        mock_db, "customer.subscription.updated", {"id": "sub_1", "metadata": {}}
    )
    assert action == "skipped"
    mock_db.add.assert_not_called()


@pytest.mark.asyncio
async def test_deleted_event_cancels(mock_db):
    sub = _existing()
    mock_db.execute.return_value = _found(sub)

    action = await apply_subscription_event(
        mock_db, "customer.subscription.deleted", {"id": "sub_1"}
    )

    assert action == "canceled"
    assert sub.status == "canceled"
    assert sub.canceled_at is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event_type,expected_status,expected_action",
    [
        ("invoice.payment_succeeded", "active", "payment_succeeded"),
        ("invoice.payment_failed", "past_due", "payment_failed"),
    ],
)
async def test_invoice_outcome_updates_status(mock_db, event_type, expected_status, expected_action):
    sub = _existing(status="past_due" if expected_status == "active" else "active")
    mock_db.execute.return_value = _found(sub)

    action = await apply_subscription_event(
        mock_db, event_type, {"id": "in_1", "subscription": "sub_1"}
    )

    assert action == expected_action
    assert sub.status == expected_status


@pytest.mark.asyncio
async def test_invoice_without_subscription_is_skipped(mock_db):
    action = await apply_subscription_event(mock_db, "invoice.payment_failed", {"id": "in_1"})
    assert action == "skipped"
