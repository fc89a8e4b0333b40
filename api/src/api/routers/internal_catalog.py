"""Internal catalog change notifications."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from api.dependencies import require_internal_caller

router = APIRouter()


class CatalogChangeRequest(BaseModel):
    reason: str = Field(default="catalog_changed", max_length=200)


@router.post("/changed", status_code=status.HTTP_202_ACCEPTED)
async def catalog_changed(
    request: Request,
    body: CatalogChangeRequest | None = None,
    _caller: str = Depends(require_internal_caller),
):
    coalescer = getattr(request.app.state, "catalog_coalescer", None)
    if coalescer is None:
        raise HTTPException(status_code=503, detail="Catalog sync is not running")
    pending = coalescer.signal(body.reason if body else "catalog_changed")
    return {"status": "scheduled", "pending_signals": pending}
