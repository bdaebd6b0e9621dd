"""Shared API dependencies: settings, DB session, store handle."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Path, Request
from sqlalchemy.ext.asyncio import AsyncSession

from treeline.config import Settings
from treeline.services.store_service import StoreHandle, resolve_store


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def get_store_handle(
    store: Annotated[str, Path(min_length=1, max_length=100)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> StoreHandle:
    """Resolve the ``{store}`` path segment to a store handle, or 404."""
    return await resolve_store(session, store)
