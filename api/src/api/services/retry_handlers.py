"""Handlers for retry queue entries, keyed by ``retry_type``."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from billsync.errors import SideEffectFailure
from billsync.models import Subdomain
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.tenant_activation import (
    activate_tenant_for_email,
    find_user_by_email,
    provision_and_activate,
)

logger = logging.getLogger(__name__)


def _parse_uuid(value: Any) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value or "").strip())
    except ValueError:
        return None


async def handle_user_lookup(db: AsyncSession, payload: dict[str, Any]) -> bool:
    """Re-check for the checkout user and resume activation once they exist."""
    email = str(payload.get("email") or "").strip().lower()
    if not email:
        logger.warning("user_lookup retry has no email")
        return False
    user = await find_user_by_email(db, email)
    if user is None:
        return False
    action = await activate_tenant_for_email(
        db,
        email,
        session_id=payload.get("session_id"),
        enqueue_on_missing_user=False,
    )
    logger.info("user_lookup for %s resumed activation: %s", email, action)
    return True


async def handle_dns_provisioning(db: AsyncSession, payload: dict[str, Any]) -> bool:
    subdomain_id = _parse_uuid(payload.get("subdomain_id"))
    if subdomain_id is None:
        logger.warning("dns_provisioning retry has no valid subdomain_id")
        return False
    record = await db.get(Subdomain, subdomain_id)
    if record is None:
        logger.warning("Subdomain %s no longer exists", subdomain_id)
        return False
    if record.status == "active":
        return True
    try:
        await provision_and_activate(db, record, owner_email=payload.get("owner_email"))
    except SideEffectFailure as exc:
        logger.warning("DNS provisioning retry for %s failed: %s", record.subdomain, exc)
        return False
    return True


async def handle_subdomain_provisioning(db: AsyncSession, payload: dict[str, Any]) -> bool:
    subdomain_id = _parse_uuid(payload.get("subdomain_id"))
    if subdomain_id is None:
        logger.warning("subdomain_provisioning retry has no valid subdomain_id")
        return False
    record = await db.get(Subdomain, subdomain_id)
    if record is None:
        return False
    if record.status != "active":
        record.status = "provisioning"
        record.updated_at = datetime.now(UTC)
        await db.flush()
    return await handle_dns_provisioning(db, payload)


RETRY_HANDLERS = {
    "user_lookup": handle_user_lookup,
    "dns_provisioning": handle_dns_provisioning,
    "subdomain_provisioning": handle_subdomain_provisioning,
}
