"""Internal retry queue endpoints (drain trigger + stats)."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, require_internal_caller
from api.services.retry_queue import dispatch_due_retries, retry_queue_stats

logger = logging.getLogger(__name__)
router = APIRouter()


@router.api_route("/drain", methods=["GET", "POST"])
async def drain_retries(
    caller: str = Depends(require_internal_caller),
    db: AsyncSession = Depends(get_db),
):
    summary = await dispatch_due_retries(db)
    logger.info("Retry drain via %s: %s", caller, summary.as_dict())
    return summary.as_dict()


@router.get("/stats")
async def retry_stats(
    _caller: str = Depends(require_internal_caller),
    db: AsyncSession = Depends(get_db),
):
    return await retry_queue_stats(db)
