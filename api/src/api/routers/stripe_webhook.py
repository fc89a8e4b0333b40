"""Stripe webhook handler."""

from __future__ import annotations

import logging

from billsync.config import get_settings
from billsync.errors import (
    AuthenticationError,
    ConfigurationError,
    InvalidEventPayload,
    ReconciliationError,
    StoreWriteError,
)
from billsync.models import AnalyticsEvent
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from api.services.promo_reconciliation import reconcile_event
from api.services.stripe_service import verify_webhook_event

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    settings = get_settings()

    try:
        event = verify_webhook_event(
            payload,
            sig_header,
            webhook_secret=settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )
    except AuthenticationError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    except ConfigurationError as exc:
        logger.error("Stripe webhook misconfigured: %s", exc)
        raise HTTPException(status_code=500, detail="Webhook not configured")
    except InvalidEventPayload as exc:
        logger.warning("Verified Stripe webhook has a malformed envelope: %s", exc)
        return {"received": True, "processed": False, "event_type": None, "action": "invalid"}

    logger.info("Stripe webhook: %s (%s)", event.type, event.id)
    try:
        outcome = await reconcile_event(db, event)
    except InvalidEventPayload as exc:
        logger.warning("Stripe event %s could not be translated: %s", event.id, exc)
        db.add(
            AnalyticsEvent(
                event_type="stripe.webhook.invalid",
                metadata_json={"event_id": event.id, "event_type": event.type, "reason": str(exc)},
            )
        )
        return {
            "received": True,
            "processed": False,
            "event_type": event.type,
            "action": "invalid",
        }
    except ConfigurationError as exc:
        logger.error("Stripe webhook %s hit a configuration error: %s", event.id, exc)
        raise HTTPException(status_code=500, detail="Webhook not configured")
    except StoreWriteError as exc:
        logger.error("Stripe webhook %s could not be stored: %s", event.id, exc)
        raise HTTPException(status_code=500, detail="Failed to record event")
    except ReconciliationError as exc:
        logger.error("Stripe webhook %s failed: %s", event.id, exc)
        raise HTTPException(status_code=500, detail="Failed to process event")

    return {
        "received": True,
        "processed": outcome.processed,
        "event_type": event.type,
        "action": outcome.action,
    }
