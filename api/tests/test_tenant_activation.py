"""Tests for subdomain activation after checkout and the provisioning client."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from api.services import provisioning_client
from api.services.provisioning_client import provision_subdomain
from api.services.tenant_activation import (
    activate_tenant_after_checkout,
    checkout_customer_email,
)
from billsync.errors import SideEffectFailure
from billsync.models import Subdomain, User, WebhookRetry


def _result(value):
    result = MagicMock()
    result.scalars.return_value.first.return_value = value
    return result


def _user(org_id=None):
    return User(id=uuid.uuid4(), email="Owner@Example.com", organization_id=org_id)


def _subdomain(org_id):
    return Subdomain(
        id=uuid.uuid4(),
        organization_id=org_id,
        subdomain="acme",
        organization_name="Acme",
        status="pending_payment",
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
    )


def _queued(mock_db) -> list[WebhookRetry]:
    return [
        call.args[0]
        for call in mock_db.add.call_args_list
        if isinstance(call.args[0], WebhookRetry)
    ]


def test_checkout_email_prefers_customer_email_and_lowercases():
    assert checkout_customer_email({"customer_email": " Owner@Example.com "}) == "owner@example.com"
    assert checkout_customer_email({"customer_details": {"email": "b@x.io"}}) == "b@x.io"
    assert checkout_customer_email({"customer_details": None}) is None


@pytest.mark.asyncio
async def test_no_email_is_a_no_op(mock_db):
    action = await activate_tenant_after_checkout(mock_db, {"id": "cs_1"})
    assert action == "no_email"
    mock_db.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_user_queues_lookup_retry(mock_db):
    action = await activate_tenant_after_checkout(
        mock_db, {"id": "cs_1", "customer_email": "late@example.com"}
    )

    assert action == "user_lookup_queued"
    [entry] = _queued(mock_db)
    assert entry.retry_type == "user_lookup"
    assert entry.payload == {"email": "late@example.com", "session_id": "cs_1"}
    assert entry.dedupe_key == "user_lookup:late@example.com"


@pytest.mark.asyncio
async def test_user_without_organization_is_skipped(mock_db):
    mock_db.execute.side_effect = [_result(_user(org_id=None))]

    action = await activate_tenant_after_checkout(mock_db, {"customer_email": "owner@example.com"})

    assert action == "no_organization"
    assert _queued(mock_db) == []


@pytest.mark.asyncio
async def test_no_pending_subdomain(mock_db):
    org_id = uuid.uuid4()
    mock_db.execute.side_effect = [_result(_user(org_id)), _result(None)]

    action = await activate_tenant_after_checkout(mock_db, {"customer_email": "owner@example.com"})

    assert action == "no_subdomain"


@pytest.mark.asyncio
async def test_successful_provisioning_activates_subdomain(mock_db):
    org_id = uuid.uuid4()
    record = _subdomain(org_id)
    mock_db.execute.side_effect = [_result(_user(org_id)), _result(record)]

    with patch(
        "api.services.tenant_activation.provision_subdomain",
        new=AsyncMock(return_value={"ok": True}),
    ) as provision:
        action = await activate_tenant_after_checkout(
            mock_db, {"id": "cs_2", "customer_email": "owner@example.com"}
        )

    assert action == "activated"
    assert record.status == "active"
    assert record.provisioned_at is not None
    provision.assert_awaited_once_with(
        subdomain="acme",
        organization_id=org_id,
        organization_name="Acme",
        owner_email="owner@example.com",
    )
    assert _queued(mock_db) == []


@pytest.mark.asyncio
async def test_provisioning_failure_queues_dns_retry(mock_db):
    org_id = uuid.uuid4()
    record = _subdomain(org_id)
    mock_db.execute.side_effect = [_result(_user(org_id)), _result(record), _result(None)]

    with patch(
        "api.services.tenant_activation.provision_subdomain",
        new=AsyncMock(side_effect=SideEffectFailure("HTTP 502")),
    ):
        action = await activate_tenant_after_checkout(
            mock_db, {"id": "cs_3", "customer_email": "owner@example.com"}
        )

    assert action == "provisioning_queued"
    assert record.status == "provisioning"
    [entry] = _queued(mock_db)
    assert entry.retry_type == "dns_provisioning"
    assert entry.payload["subdomain_id"] == str(record.id)
    assert entry.payload["owner_email"] == "owner@example.com"
    assert entry.dedupe_key == f"dns_provisioning:{record.id}"


def _mock_transport(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def _client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(provisioning_client.httpx, "AsyncClient", _client)


@pytest.mark.asyncio
async def test_provision_subdomain_posts_to_provisioning_api(monkeypatch):
    monkeypatch.setenv("PROVISIONING_BASE_URL", "http://provisioner.internal/")
    from billsync.config import reset_settings_cache

    reset_settings_cache()
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "provisioned"})

    _mock_transport(monkeypatch, handler)

    body = await provision_subdomain(
        subdomain="acme",
        organization_id="org-1",
        organization_name="Acme",
        owner_email="owner@example.com",
    )

    assert body == {"status": "provisioned"}
    assert str(seen[0].url) == "http://provisioner.internal/api/subdomains/provision"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code,retryable", [(502, True), (429, True), (400, False)])
async def test_provision_subdomain_error_status_raises(monkeypatch, status_code, retryable):
    _mock_transport(monkeypatch, lambda request: httpx.Response(status_code, text="nope"))

    with pytest.raises(SideEffectFailure) as exc_info:
        await provision_subdomain(
            subdomain="acme", organization_id="org-1", organization_name=None, owner_email=None
        )

    assert exc_info.value.retryable is retryable


@pytest.mark.asyncio
async def test_provision_subdomain_transport_error_raises(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    _mock_transport(monkeypatch, handler)

    with pytest.raises(SideEffectFailure):
        await provision_subdomain(
            subdomain="acme", organization_id="org-1", organization_name=None, owner_email=None
        )
