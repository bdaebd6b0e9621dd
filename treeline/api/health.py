"""Health check endpoint."""

from __future__ import annotations

import logging
import os
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from treeline.api.deps import get_session, get_settings
from treeline.config import Settings
from treeline.models.store import Store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    storage: str
    stores: int | None = None


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> HealthResponse:
    """Report database reachability and whether the stores directory is writable."""
    db_status = "ok"
    store_count: int | None = None
    try:
        store_count = int(
            (await session.execute(select(func.count()).select_from(Store))).scalar_one()
        )
    except SQLAlchemyError:
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    storage_status = "ok" if os.access(settings.stores_dir, os.W_OK) else "error"
    if storage_status != "ok":
        logger.warning("Stores directory %s is not writable", settings.stores_dir)

    healthy = db_status == "ok" and storage_status == "ok"
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version="0.1.0",
        database=db_status,
        storage=storage_status,
        stores=store_count,
    )
