"""Background maintenance loop (retry drain, promo reconciliation, catalog validation)."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from billsync.config import get_settings
from billsync.database import get_session

from api.services.catalog_sync import validate_catalog_sync
from api.services.promo_sync import push_pending_promo_codes, reconcile_promo_codes
from api.services.retry_queue import dispatch_due_retries
from api.services.sync_coalescer import DebouncedSyncCoalescer

logger = logging.getLogger(__name__)


def _is_due(last_run_at: datetime | None, interval: timedelta, now: datetime) -> bool:
    return last_run_at is None or (now - last_run_at) >= interval


async def run_maintenance_worker(
    stop_event: asyncio.Event,
    *,
    coalescer: DebouncedSyncCoalescer | None = None,
    poll_interval_seconds: float | None = None,
) -> None:
    settings = get_settings()
    drain_interval = timedelta(seconds=max(1.0, float(settings.retry_drain_interval_seconds)))
    promo_interval = timedelta(hours=max(1, int(settings.promo_reconciliation_interval_hours)))
    catalog_interval = timedelta(hours=max(1, int(settings.catalog_validation_interval_hours)))
    if poll_interval_seconds is None:
        poll_interval_seconds = drain_interval.total_seconds()
    last_drain_at: datetime | None = None
    last_promo_at: datetime | None = None
    last_catalog_at: datetime | None = None

    logger.info("Maintenance worker started")
    try:
        while not stop_event.is_set():
            now = datetime.now(UTC)

            if _is_due(last_drain_at, drain_interval, now):
                try:
                    async with get_session() as db:
                        await dispatch_due_retries(db)
                    last_drain_at = datetime.now(UTC)
                except Exception:
                    logger.exception("Scheduled retry drain failed")

            if _is_due(last_promo_at, promo_interval, now):
                try:
                    async with get_session() as db:
                        await push_pending_promo_codes(db, trigger="scheduled")
                    async with get_session() as db:
                        await reconcile_promo_codes(db, trigger="scheduled")
                    last_promo_at = datetime.now(UTC)
                except Exception:
                    logger.exception("Scheduled promo reconciliation failed")

            if _is_due(last_catalog_at, catalog_interval, now):
                try:
                    async with get_session() as db:
                        validation = await validate_catalog_sync(db)
                    last_catalog_at = datetime.now(UTC)
                    if not validation["is_valid"]:
                        logger.warning(
                            "Catalog out of sync (missing=%s invalid=%s)",
                            validation["missing"],
                            validation["invalid"],
                        )
                        if coalescer is not None:
                            coalescer.signal("scheduled_validation")
                except Exception:
                    logger.exception("Scheduled catalog validation failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_seconds)
            except TimeoutError:
                pass
    finally:
        logger.info("Maintenance worker stopped")
