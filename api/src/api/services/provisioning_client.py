"""HTTP client for the subdomain provisioning API."""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx
from billsync.config import get_settings
from billsync.errors import SideEffectFailure

logger = logging.getLogger(__name__)

PROVISION_PATH = "/api/subdomains/provision"


async def provision_subdomain(
    *,
    subdomain: str,
    organization_id: uuid.UUID | str,
    organization_name: str | None,
    owner_email: str | None,
) -> dict[str, Any]:
    """Ask the provisioning API to set up DNS for a subdomain.

    Raises ``SideEffectFailure`` on transport errors, timeouts and non-2xx
    responses so callers can queue a retry.
    """
    settings = get_settings()
    url = f"{settings.provisioning_base_url.rstrip('/')}{PROVISION_PATH}"
    body = {
        "subdomain": subdomain,
        "organizationId": str(organization_id),
        "organizationName": organization_name,
        "ownerEmail": owner_email,
        "autoProvision": True,
    }
    try:
        async with httpx.AsyncClient(timeout=settings.provisioning_timeout_seconds) as client:
            response = await client.post(url, json=body)
    except httpx.HTTPError as exc:
        raise SideEffectFailure(f"Provisioning request for {subdomain} failed: {exc}") from exc

    if response.status_code >= 400:
        raise SideEffectFailure(
            f"Provisioning for {subdomain} returned HTTP {response.status_code}: "
            f"{response.text[:200]}",
            retryable=response.status_code >= 500 or response.status_code == 429,
        )

    logger.info("Provisioned subdomain %s", subdomain)
    try:
        return response.json()
    except ValueError:
        return {}
