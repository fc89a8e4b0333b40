"""Tests for the internal retry drain and catalog change endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from api.services.retry_queue import DispatchSummary
from billsync.config import reset_settings_cache
from conftest import DRAIN_SECRET

AUTH = {"Authorization": f"Bearer {DRAIN_SECRET}"}


class _FakeCoalescer:
    def __init__(self):
        self.reasons: list[str] = []

    def signal(self, reason: str = "") -> int:
        self.reasons.append(reason)
        return len(self.reasons)


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"x-scheduler-signal": "1"}])
async def test_drain_rejects_unauthenticated_callers(client, headers):
    with patch("api.routers.internal_retries.dispatch_due_retries", new=AsyncMock()) as dispatch:
        response = await client.post("/internal/retries/drain", headers=headers)

    assert response.status_code == 401
    dispatch.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["GET", "POST"])
async def test_drain_with_bearer_returns_summary(client, mock_db, method):
    summary = DispatchSummary(processed=3, successes=2, failures=1, exhausted=1)
    with patch(
        "api.routers.internal_retries.dispatch_due_retries",
        new=AsyncMock(return_value=summary),
    ) as dispatch:
        response = await client.request(method, "/internal/retries/drain", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {
        "processed": 3,
        "successes": 2,
        "failures": 1,
        "exhausted": 1,
        "skipped": 0,
    }
    dispatch.assert_awaited_once_with(mock_db)


@pytest.mark.asyncio
async def test_drain_accepts_scheduler_header_when_trusted(client, monkeypatch):
    monkeypatch.setenv("TRUST_SCHEDULER_SIGNAL", "true")
    reset_settings_cache()

    with patch(
        "api.routers.internal_retries.dispatch_due_retries",
        new=AsyncMock(return_value=DispatchSummary()),
    ):
        response = await client.get("/internal/retries/drain", headers={"x-scheduler-signal": "1"})

    assert response.status_code == 200
    assert response.json()["processed"] == 0


@pytest.mark.asyncio
async def test_drain_rejected_when_secret_unset(client, monkeypatch):
    monkeypatch.setenv("RETRY_DRAIN_SECRET", "")
    reset_settings_cache()

    response = await client.post("/internal/retries/drain", headers={"Authorization": "Bearer "})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_stats_reports_status_counts(client, mock_db):
    grouped = MagicMock()
    grouped.all.return_value = [("pending", 4), ("completed", 7)]
    mock_db.execute.return_value = grouped

    response = await client.get("/internal/retries/stats", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {
        "pending": 4,
        "in_flight": 0,
        "completed": 7,
        "failed": 0,
        "total": 11,
    }


@pytest.mark.asyncio
async def test_catalog_changed_signals_coalescer(app, client):
    coalescer = _FakeCoalescer()
    app.state.catalog_coalescer = coalescer

    response = await client.post(
        "/internal/catalog/changed", headers=AUTH, json={"reason": "price edited"}
    )

    assert response.status_code == 202
    assert response.json() == {"status": "scheduled", "pending_signals": 1}
    assert coalescer.reasons == ["price edited"]


@pytest.mark.asyncio
async def test_catalog_changed_without_body_uses_default_reason(app, client):
    coalescer = _FakeCoalescer()
    app.state.catalog_coalescer = coalescer

    response = await client.post("/internal/catalog/changed", headers=AUTH)

    assert response.status_code == 202
    assert coalescer.reasons == ["catalog_changed"]


@pytest.mark.asyncio
async def test_catalog_changed_requires_auth(app, client):
    app.state.catalog_coalescer = _FakeCoalescer()
    response = await client.post("/internal/catalog/changed")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_catalog_changed_without_coalescer_is_unavailable(client):
    response = await client.post("/internal/catalog/changed", headers=AUTH)
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_health_is_public(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "billsync-api"}
