"""Timeline browser endpoints: index, manifests and deltas."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from treeline.api.deps import get_session, get_settings, get_store_handle
from treeline.api.stores import parse_version
from treeline.config import Settings
from treeline.exceptions import NotFoundError
from treeline.schemas.index import Delta, Index, Manifest, TimelineEntry
from treeline.services.checkpoint_service import build_store_index
from treeline.services.index_service import delta_between, manifest_key
from treeline.services.store_service import StoreHandle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stores", tags=["timeline"])


@router.get("/{store}/index", response_model=Index)
async def index_endpoint(
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Index:
    """Full index document; served from cache when it matches the ledger."""
    return await build_store_index(session, handle, settings)


@router.get("/{store}/timeline", response_model=list[TimelineEntry])
async def timeline_endpoint(
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> list[TimelineEntry]:
    index = await build_store_index(session, handle, settings)
    return index.checkpoints


@router.get("/{store}/manifest/{version}", response_model=Manifest)
async def manifest_endpoint(
    version: str,
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Manifest:
    index = await build_store_index(session, handle, settings)
    manifest = index.manifests.get(manifest_key(parse_version(version)))
    if manifest is None:
        raise NotFoundError("manifest not found")
    return manifest


@router.get("/{store}/delta/{from_version}/{to_version}", response_model=Delta)
async def delta_endpoint(
    from_version: str,
    to_version: str,
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Delta:
    """Stored delta for adjacent or parent pairs, computed on the fly otherwise."""
    index = await build_store_index(session, handle, settings)
    return delta_between(index, parse_version(from_version), parse_version(to_version))
