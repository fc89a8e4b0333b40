"""Catalog (product/price) sync between local products and Stripe."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import stripe
from billsync.errors import ConfigurationError
from billsync.models import AnalyticsEvent, CatalogProduct, StripeProductMapping, SyncFence
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.stripe_service import (
    _get_stripe_client,
    create_price,
    create_product_with_price,
    deactivate_price,
    modify_product,
    retrieve_price,
    retrieve_product,
)

logger = logging.getLogger(__name__)

CATALOG_FENCE_NAME = "catalog-sync"


def build_fence_claim(name: str, fence: int):
    stmt = pg_insert(SyncFence).values(name=name, fence=fence, updated_at=func.now())
    return stmt.on_conflict_do_update(
        index_elements=[SyncFence.name],
        set_={"fence": stmt.excluded.fence, "updated_at": func.now()},
        where=SyncFence.fence < stmt.excluded.fence,
    ).returning(SyncFence.fence)


async def claim_sync_fence(db: AsyncSession, name: str, fence: int) -> bool:
    """Record ``fence`` as the newest writer for ``name``.

    Returns False when a pass holding a newer fence has already written.
    The row stays locked until commit, so an older pass waits and then loses.
    """
    result = await db.execute(build_fence_claim(name, fence))
    return result.scalar_one_or_none() is not None



def _product_metadata(product: CatalogProduct) -> dict[str, str]:
    metadata = {str(k): str(v) for k, v in (product.metadata_json or {}).items()}
    metadata["localId"] = product.local_id
    metadata["billing"] = product.billing_interval
    return metadata


async def _load_active_products(db: AsyncSession) -> list[CatalogProduct]:
    result = await db.execute(
        select(CatalogProduct)
        .where(CatalogProduct.is_active.is_(True))
        .order_by(CatalogProduct.local_id.asc())
    )
    return list(result.scalars().all())


async def _load_mappings(db: AsyncSession) -> dict[str, StripeProductMapping]:
    result = await db.execute(select(StripeProductMapping))
    return {mapping.local_product_id: mapping for mapping in result.scalars().all()}


async def _create_in_stripe(product: CatalogProduct) -> tuple[str, str]:
    created = await create_product_with_price(
        name=product.name,
        description=product.description,
        unit_amount_cents=product.unit_amount_cents,
        currency=product.currency,
        billing_interval=product.billing_interval,
        metadata=_product_metadata(product),
    )
    return created["stripe_product_id"], created["stripe_price_id"]


async def _sync_existing(
    product: CatalogProduct,
    mapping: StripeProductMapping,
    *,
    force_update: bool,
) -> tuple[str, str, str]:
    stripe_product = await retrieve_product(str(mapping.stripe_product_id or ""))
    if stripe_product is None or stripe_product.get("deleted"):
        logger.info("Stripe product for %s is gone; recreating", product.local_id)
        product_id, price_id = await _create_in_stripe(product)
        return "created", product_id, price_id

    stripe_price = (
        await retrieve_price(mapping.stripe_price_id) if mapping.stripe_price_id else None
    )
    product_id = str(stripe_product["id"])
    price_id = str(stripe_price["id"]) if stripe_price else ""
    current_amount = stripe_price.get("unit_amount") if stripe_price else None

    name_changed = stripe_product.get("name") != product.name
    amount_changed = current_amount != product.unit_amount_cents
    if not (name_changed or amount_changed or force_update):
        return "synced", product_id, price_id

    fields: dict[str, Any] = {"name": product.name, "metadata": _product_metadata(product)}
    if product.description:
        fields["description"] = product.description
    await modify_product(product_id, **fields)

    if amount_changed:
        new_price_id = await create_price(
            product_id=product_id,
            unit_amount_cents=product.unit_amount_cents,
            currency=product.currency,
            billing_interval=product.billing_interval,
            metadata=_product_metadata(product),
        )
        if stripe_price and stripe_price.get("active", True):
            await deactivate_price(price_id)
        price_id = new_price_id
    return "updated", product_id, price_id


def _record_mapping(
    db: AsyncSession,
    mappings: dict[str, StripeProductMapping],
    product: CatalogProduct,
    *,
    status: str,
    product_id: str | None,
    price_id: str | None,
    error: str | None,
    now: datetime,
) -> None:
    mapping = mappings.get(product.local_id)
    if mapping is None:
        mapping = StripeProductMapping(local_product_id=product.local_id, active=True)
        db.add(mapping)
        mappings[product.local_id] = mapping
    mapping.local_product_name = product.name
    mapping.sync_status = status
    mapping.sync_error = error
    if status != "error":
        mapping.stripe_product_id = product_id
        mapping.stripe_price_id = price_id
        mapping.price_amount_cents = product.unit_amount_cents
        mapping.last_synced_at = now
        mapping.active = True


async def sync_catalog_with_stripe(
    db: AsyncSession,
    *,
    dry_run: bool = False,
    force_update: bool = False,
    trigger: str = "manual",
    fence_token: int | None = None,
) -> dict[str, Any]:
    """Push every active catalog product to Stripe and refresh its mapping.

    ``dry_run`` makes no Stripe calls and writes no mappings; it only
    reports what a real run would create. With ``fence_token`` the pass
    first claims the catalog fence and does nothing if a newer pass has.
    """
    started_at = datetime.now(UTC)
    if fence_token is not None and not dry_run:
        if not await claim_sync_fence(db, CATALOG_FENCE_NAME, fence_token):
            summary = {
                "status": "stale",
                "trigger": trigger,
                "fence_token": fence_token,
                "started_at": started_at.isoformat(),
            }
            db.add(AnalyticsEvent(event_type="catalog.sync.stale", metadata_json=summary))
            logger.warning("Catalog sync with fence %d superseded by a newer pass", fence_token)
            return summary
    if not dry_run:
        try:
            _get_stripe_client()
        except ConfigurationError as exc:
            summary = {
                "status": "skipped",
                "reason": str(exc),
                "trigger": trigger,
                "started_at": started_at.isoformat(),
            }
            db.add(AnalyticsEvent(event_type="catalog.sync.skipped", metadata_json=summary))
            return summary

    products = await _load_active_products(db)
    mappings = await _load_mappings(db)

    scanned = 0
    created = 0
    updated = 0
    unchanged = 0
    failures = 0
    errors: list[str] = []

    for product in products:
        scanned += 1
        mapping = mappings.get(product.local_id)

        if dry_run:
            if mapping is None or not mapping.stripe_product_id:
                created += 1
            else:
                unchanged += 1
            continue

        try:
            if mapping is None or not mapping.stripe_product_id:
                product_id, price_id = await _create_in_stripe(product)
                status = "created"
            else:
                status, product_id, price_id = await _sync_existing(
                    product, mapping, force_update=force_update
                )
        except (stripe.StripeError, TimeoutError) as exc:
            failures += 1
            errors.append(f"{product.local_id}: {exc}")
            logger.warning("Catalog sync failed for %s: %s", product.local_id, exc)
            _record_mapping(
                db,
                mappings,
                product,
                status="error",
                product_id=None,
                price_id=None,
                error=str(exc),
                now=datetime.now(UTC),
            )
            continue

        if status == "created":
            created += 1
        elif status == "updated":
            updated += 1
        else:
            unchanged += 1
        _record_mapping(
            db,
            mappings,
            product,
            status=status,
            product_id=product_id,
            price_id=price_id,
            error=None,
            now=datetime.now(UTC),
        )

    summary = {
        "status": "ok" if failures == 0 else "partial",
        "trigger": trigger,
        "dry_run": dry_run,
        "started_at": started_at.isoformat(),
        "finished_at": datetime.now(UTC).isoformat(),
        "scanned": scanned,
        "created": created,
        "updated": updated,
        "unchanged": unchanged,
        "failures": failures,
        "errors": errors,
    }
    db.add(AnalyticsEvent(event_type="catalog.sync.run", metadata_json=summary))
    logger.info(
        "Catalog sync (%s): scanned=%d created=%d updated=%d failures=%d",
        trigger,
        scanned,
        created,
        updated,
        failures,
    )
    return summary


async def validate_catalog_sync(db: AsyncSession) -> dict[str, Any]:
    """Check every active product has a live Stripe product and price."""
    products = await _load_active_products(db)
    mappings = await _load_mappings(db)
    missing: list[str] = []
    invalid: list[str] = []

    for product in products:
        mapping = mappings.get(product.local_id)
        if mapping is None or not mapping.active or not mapping.stripe_product_id:
            missing.append(product.local_id)
            continue
        try:
            stripe_product = await retrieve_product(mapping.stripe_product_id)
            stripe_price = (
                await retrieve_price(mapping.stripe_price_id)
                if mapping.stripe_price_id
                else None
            )
        except (stripe.StripeError, TimeoutError) as exc:
            logger.warning("Catalog validation lookup failed for %s: %s", product.local_id, exc)
            invalid.append(product.local_id)
            continue
        if not stripe_product or stripe_product.get("deleted") or not stripe_price:
            invalid.append(product.local_id)

    return {
        "is_valid": not missing and not invalid,
        "missing": missing,
        "invalid": invalid,
    }
