"""Persistent retry queue and its dispatcher."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from billsync.config import get_settings
from billsync.models import AnalyticsEvent, WebhookRetry
from billsync.models.webhook_retry import OPEN_RETRY_STATUSES, RETRY_STATUSES
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

RetryHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[bool]]


@dataclass
class DispatchSummary:
    processed: int = 0
    successes: int = 0
    failures: int = 0
    exhausted: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def backoff_seconds(
    attempt: int,
    *,
    base: float | None = None,
    cap: float | None = None,
) -> float:
    """Exponential backoff after ``attempt`` failed attempts: base * 2**(attempt-1), capped."""
    settings = get_settings()
    base = settings.retry_backoff_base_seconds if base is None else base
    cap = settings.retry_backoff_max_seconds if cap is None else cap
    exponent = max(0, int(attempt) - 1)
    return float(min(base * (2**exponent), cap))


def default_registry() -> Mapping[str, RetryHandler]:
    # Handlers reach back into tenant activation, which enqueues retries.
    from api.services.retry_handlers import RETRY_HANDLERS

    return RETRY_HANDLERS


async def enqueue_retry(
    db: AsyncSession,
    retry_type: str,
    payload: dict[str, Any],
    *,
    dedupe_key: str | None = None,
    max_attempts: int | None = None,
) -> WebhookRetry:
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Retry payload for {retry_type} is not JSON-serialisable") from exc

    if dedupe_key:
        existing_result = await db.execute(
            select(WebhookRetry).where(
                WebhookRetry.retry_type == retry_type,
                WebhookRetry.dedupe_key == dedupe_key,
                WebhookRetry.status.in_(OPEN_RETRY_STATUSES),
            )
        )
        existing = existing_result.scalars().first()
        if existing:
            logger.info("Retry %s/%s already queued as %s", retry_type, dedupe_key, existing.id)
            return existing

    entry = WebhookRetry(
        retry_type=retry_type,
        payload=payload,
        dedupe_key=dedupe_key,
        status="pending",
        attempt_count=0,
        max_attempts=max_attempts or get_settings().retry_max_attempts,
    )
    db.add(entry)
    await db.flush()
    logger.info("Queued %s retry %s", retry_type, entry.id)
    return entry


def build_claim_statement(*, batch_size: int, now: datetime, lease_seconds: float):
    """UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING claimed rows.

    Pending entries qualify once due; in-flight entries qualify again when
    their claim lease has lapsed. Exhausted entries never qualify.
    """
    lease_cutoff = now - timedelta(seconds=lease_seconds)
    under_limit = WebhookRetry.attempt_count < WebhookRetry.max_attempts
    due = or_(
        and_(
            WebhookRetry.status == "pending",
            under_limit,
            or_(WebhookRetry.next_attempt_at.is_(None), WebhookRetry.next_attempt_at <= now),
        ),
        and_(
            WebhookRetry.status == "in_flight",
            under_limit,
            WebhookRetry.claimed_at < lease_cutoff,
        ),
    )
    candidate_ids = (
        select(WebhookRetry.id)
        .where(due)
        .order_by(WebhookRetry.created_at.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
        .correlate(None)
    )
    return (
        update(WebhookRetry)
        .where(WebhookRetry.id.in_(candidate_ids))
        .values(status="in_flight", claimed_at=now)
        .returning(WebhookRetry)
        .execution_options(synchronize_session=False)
    )


async def claim_due_retries(
    db: AsyncSession,
    *,
    batch_size: int,
    now: datetime,
    lease_seconds: float,
) -> list[WebhookRetry]:
    result = await db.execute(
        build_claim_statement(batch_size=batch_size, now=now, lease_seconds=lease_seconds)
    )
    entries = list(result.scalars().all())
    entries.sort(key=lambda entry: entry.created_at or now)
    return entries


async def _run_handler(
    handler: RetryHandler,
    db: AsyncSession,
    entry: WebhookRetry,
    timeout: float,
) -> tuple[bool, str | None]:
    try:
        async with db.begin_nested():
            ok = await asyncio.wait_for(handler(db, dict(entry.payload or {})), timeout=timeout)
    except TimeoutError:
        return False, f"Handler timed out after {timeout:g}s"
    except Exception as exc:
        logger.exception("Retry handler %s raised for %s", entry.retry_type, entry.id)
        return False, f"{exc.__class__.__name__}: {exc}"
    if not ok:
        return False, "Handler reported failure"
    return True, None


async def _alert_exhausted(db: AsyncSession, entry: WebhookRetry) -> None:
    logger.error(
        "Retry %s (%s) exhausted after %d attempts: %s",
        entry.id,
        entry.retry_type,
        entry.attempt_count,
        entry.last_error,
    )
    db.add(
        AnalyticsEvent(
            event_type="retry.entry.exhausted",
            metadata_json={
                "retry_id": str(entry.id),
                "retry_type": entry.retry_type,
                "attempt_count": entry.attempt_count,
                "last_error": entry.last_error,
                "payload": entry.payload or {},
            },
        )
    )


async def _renew_claim(db: AsyncSession, entry: WebhookRetry, renewed_at: datetime) -> bool:
    """Extend an entry's lease if this worker still holds it."""
    result = await db.execute(
        update(WebhookRetry)
        .where(
            WebhookRetry.id == entry.id,
            WebhookRetry.status == "in_flight",
            WebhookRetry.claimed_at == entry.claimed_at,
        )
        .values(claimed_at=renewed_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    entry.claimed_at = renewed_at
    return True


async def dispatch_due_retries(
    db: AsyncSession,
    *,
    batch_size: int | None = None,
    registry: Mapping[str, RetryHandler] | None = None,
    now: datetime | None = None,
) -> DispatchSummary:
    """Claim a batch of due entries and run each through its handler.

    The claim is committed before any handler runs, and every entry's
    outcome is committed on its own, so a failing entry never aborts the
    rest of the batch. Each entry's lease is renewed just before its
    handler runs; an entry whose lease was taken over by another worker
    is left alone.
    """
    settings = get_settings()
    current = now or datetime.now(UTC)
    handlers = default_registry() if registry is None else registry
    summary = DispatchSummary()

    entries = await claim_due_retries(
        db,
        batch_size=batch_size or settings.retry_batch_size,
        now=current,
        lease_seconds=settings.retry_claim_lease_seconds,
    )
    await db.commit()

    for entry in entries:
        summary.processed += 1
        renewed_at = datetime.now(UTC) if now is None else current
        if not await _renew_claim(db, entry, renewed_at):
            logger.warning("Retry entry %s was reclaimed by another worker; skipping", entry.id)
            summary.skipped += 1
            await db.commit()
            continue
        await db.commit()
        handler = handlers.get(entry.retry_type)
        if handler is None:
            logger.warning("No handler for retry type %s (entry %s)", entry.retry_type, entry.id)
            entry.status = "failed"
            entry.failed_at = current
            entry.last_error = f"Unknown retry type: {entry.retry_type}"
            summary.skipped += 1
            await db.commit()
            continue

        ok, error = await _run_handler(
            handler, db, entry, float(settings.retry_handler_timeout_seconds)
        )
        entry.attempt_count = min(int(entry.attempt_count or 0) + 1, entry.max_attempts)
        entry.last_attempt_at = current
        if ok:
            entry.status = "completed"
            entry.completed_at = current
            entry.last_error = None
            summary.successes += 1
        else:
            summary.failures += 1
            entry.last_error = error
            if entry.attempt_count >= entry.max_attempts:
                entry.status = "failed"
                entry.failed_at = current
                summary.exhausted += 1
                await _alert_exhausted(db, entry)
            else:
                entry.status = "pending"
                entry.claimed_at = None
                entry.next_attempt_at = current + timedelta(
                    seconds=backoff_seconds(entry.attempt_count)
                )
        await db.commit()

    if summary.processed:
        logger.info("Retry dispatch finished: %s", summary.as_dict())
    return summary


async def retry_queue_stats(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(
        select(WebhookRetry.status, func.count()).group_by(WebhookRetry.status)
    )
    counts = {status: 0 for status in RETRY_STATUSES}
    for status, count in result.all():
        counts[str(status)] = int(count)
    counts["total"] = sum(counts[status] for status in RETRY_STATUSES)
    return counts
