"""FastAPI dependency injection."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator

from billsync.config import get_settings
from billsync.database import get_session_factory
from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SCHEDULER_SIGNAL_HEADER = "x-scheduler-signal"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth[7:].strip()
        return token or None
    return None


def is_valid_internal_token(*, expected_token: str, received_token: str | None) -> bool:
    if not expected_token or not received_token:
        return False
    return secrets.compare_digest(expected_token.encode(), received_token.encode())


def require_internal_caller(request: Request) -> str:
    """Authorise scheduler and operator calls to the internal endpoints.

    Accepts ``Authorization: Bearer <RETRY_DRAIN_SECRET>``, or the scheduler
    header when ``TRUST_SCHEDULER_SIGNAL`` is enabled. Returns how the caller
    was authorised.
    """
    settings = get_settings()
    if is_valid_internal_token(
        expected_token=settings.retry_drain_secret,
        received_token=_extract_bearer_token(request),
    ):
        return "bearer"
    if settings.trust_scheduler_signal and request.headers.get(SCHEDULER_SIGNAL_HEADER):
        return "scheduler"
    logger.warning("Rejected internal call to %s", request.url.path)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
