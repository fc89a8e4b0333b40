"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from billsync.config import get_settings
from billsync.database import close_engine, get_engine
from fastapi import FastAPI
from sqlalchemy import text

from api.routers import health, internal_catalog, internal_retries, stripe_webhook
from api.services.maintenance import run_maintenance_worker
from api.services.sync_coalescer import build_catalog_coalescer

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


async def _assert_database_revision_current() -> None:
    settings = get_settings()
    if settings.skip_migration_check:
        return

    repo_root = Path(__file__).resolve().parents[3]
    alembic_ini = repo_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found; skipping migration revision check")
        return

    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(repo_root / "alembic"))
    script = ScriptDirectory.from_config(alembic_cfg)
    expected_heads = set(script.get_heads())
    if not expected_heads:
        return

    engine = get_engine()
    try:
        async with engine.connect() as connection:
            result = await connection.execute(text("SELECT version_num FROM alembic_version"))
            current_revisions = {str(row[0]) for row in result.fetchall() if row and row[0]}
    except Exception as exc:
        raise RuntimeError(
            "Database migration revision check failed. "
            "Run `alembic upgrade head` before starting the API."
        ) from exc

    if current_revisions != expected_heads:
        raise RuntimeError(
            "Database schema revision mismatch: "
            f"db={sorted(current_revisions)} expected={sorted(expected_heads)}. "
            "Run `alembic upgrade head`."
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    maintenance_stop_event: asyncio.Event | None = None
    maintenance_task: asyncio.Task | None = None
    coalescer = None
    try:
        await _assert_database_revision_current()
        coalescer = build_catalog_coalescer()
        app.state.catalog_coalescer = coalescer
        if settings.background_workers_enabled:
            maintenance_stop_event = asyncio.Event()
            maintenance_task = asyncio.create_task(
                run_maintenance_worker(maintenance_stop_event, coalescer=coalescer)
            )
        yield
    finally:
        if maintenance_stop_event is not None:
            maintenance_stop_event.set()
        if maintenance_task is not None:
            try:
                await asyncio.wait_for(maintenance_task, timeout=5)
            except Exception:
                maintenance_task.cancel()
                with suppress(Exception):
                    await maintenance_task
        if coalescer is not None:
            try:
                await asyncio.wait_for(coalescer.aclose(), timeout=30)
            except Exception:
                logger.exception("Catalog sync coalescer did not shut down cleanly")
        await close_engine()


def _warn_insecure_defaults() -> None:
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is empty; webhooks will be rejected with 500")
    if not settings.retry_drain_secret and not settings.trust_scheduler_signal:
        logger.warning("RETRY_DRAIN_SECRET is empty; internal endpoints are unreachable")


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
    app = FastAPI(title="Billsync API", version="0.1.0", lifespan=lifespan)
    _warn_insecure_defaults()
    app.include_router(health.router, tags=["health"])
    app.include_router(stripe_webhook.router, prefix="/v1/stripe", tags=["stripe"])
    app.include_router(internal_retries.router, prefix="/internal/retries", tags=["internal"])
    app.include_router(internal_catalog.router, prefix="/internal/catalog", tags=["internal"])
    return app


app = create_app()
