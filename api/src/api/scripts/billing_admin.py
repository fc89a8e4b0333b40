"""Operator CLI for billing sync maintenance tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any

from billsync.config import get_settings
from billsync.database import close_engine, get_session

from api.services.catalog_sync import sync_catalog_with_stripe, validate_catalog_sync
from api.services.promo_sync import (
    promo_status_summary,
    push_pending_promo_codes,
    reconcile_promo_codes,
)
from api.services.retry_queue import dispatch_due_retries, retry_queue_stats

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


async def _drain_retries(args: argparse.Namespace) -> dict[str, Any]:
    totals: dict[str, int] = {}
    for _ in range(max(args.batches, 1)):
        async with get_session() as db:
            summary = await dispatch_due_retries(db, batch_size=args.batch_size)
        for key, value in summary.as_dict().items():
            totals[key] = totals.get(key, 0) + value
        if summary.processed == 0:
            break
    return totals


async def _push_promo_codes(args: argparse.Namespace) -> dict[str, Any]:
    async with get_session() as db:
        return await push_pending_promo_codes(db, trigger="cli")


async def _reconcile_promo_codes(args: argparse.Namespace) -> dict[str, Any]:
    async with get_session() as db:
        return await reconcile_promo_codes(db, trigger="cli")


async def _sync_catalog(args: argparse.Namespace) -> dict[str, Any]:
    async with get_session() as db:
        summary = await sync_catalog_with_stripe(
            db,
            dry_run=bool(args.dry_run),
            force_update=bool(args.force),
            trigger="cli",
        )
        if args.dry_run:
            await db.rollback()
        return summary


async def _validate_catalog(args: argparse.Namespace) -> dict[str, Any]:
    async with get_session() as db:
        return await validate_catalog_sync(db)


async def _status(args: argparse.Namespace) -> dict[str, Any]:
    async with get_session() as db:
        return {
            "retries": await retry_queue_stats(db),
            "promo_codes": await promo_status_summary(db),
        }


COMMANDS = {
    "drain-retries": _drain_retries,
    "push-promo-codes": _push_promo_codes,
    "reconcile-promo-codes": _reconcile_promo_codes,
    "sync-catalog": _sync_catalog,
    "validate-catalog": _validate_catalog,
    "status": _status,
}


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Billing sync maintenance tasks.")
    sub = parser.add_subparsers(dest="command", required=True)

    drain = sub.add_parser("drain-retries", help="Run the retry dispatcher now.")
    drain.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Entries claimed per batch (default: RETRY_BATCH_SIZE).",
    )
    drain.add_argument(
        "--batches",
        type=int,
        default=1,
        help="Maximum number of batches to drain (default: 1).",
    )

    sub.add_parser("push-promo-codes", help="Create Stripe coupons for pending promo codes.")
    sub.add_parser("reconcile-promo-codes", help="Re-read linked promo codes from Stripe.")

    catalog = sub.add_parser("sync-catalog", help="Push the product catalog to Stripe.")
    catalog.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be created without calling Stripe.",
    )
    catalog.add_argument(
        "--force",
        action="store_true",
        help="Push product name/description/metadata even when unchanged.",
    )

    sub.add_parser("validate-catalog", help="Check every product has a live Stripe mapping.")
    sub.add_parser("status", help="Show retry queue and promo code sync status.")
    return parser


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    try:
        return await COMMANDS[args.command](args)
    finally:
        await close_engine()


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(level=get_settings().log_level.upper(), format=LOG_FORMAT)
    result = asyncio.run(_run(args))
    print(json.dumps(result, indent=2, default=str))
    if args.command == "validate-catalog" and not result.get("is_valid", False):
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
