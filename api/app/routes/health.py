from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.dependencies import get_session
from jobs import store
from jobs.errors import StoreUnavailable

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": "jobs-api"}


@router.get("/readyz")
async def readiness(db: AsyncSession = Depends(get_session)):
    """Database reachable, plus queue depth per state and kind."""
    try:
        with store.translate_store_errors():
            await db.execute(text("SELECT 1"))
            stats = await store.queue_stats(db)
    except StoreUnavailable as exc:
        logger.error("Readiness check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "unavailable", "error": str(exc)})

    return {"status": "ready", "queue": stats}
