"""Liveness and readiness checks."""

from billsync.database import get_session
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": "billsync-api"}


@router.get("/health/ready")
async def readiness_check(request: Request):
    coalescer = getattr(request.app.state, "catalog_coalescer", None)
    catalog_sync = coalescer.snapshot() if coalescer is not None else None
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "error": str(exc), "catalog_sync": catalog_sync},
        )
    return {"status": "ready", "catalog_sync": catalog_sync}
