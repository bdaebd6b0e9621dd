"""Store registration and checkpoint API endpoints."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from treeline.api.deps import get_session, get_settings, get_store_handle
from treeline.config import Settings
from treeline.models.checkpoint import Checkpoint
from treeline.models.store import Store
from treeline.schemas.checkpoint import (
    ChangeResponse,
    CheckpointCreate,
    CheckpointCreateResponse,
    CheckpointResponse,
    DiffResponse,
    FileDiffResponse,
    FileInfoResponse,
    HashLookupResponse,
    RestoreRequest,
    RestoreResponse,
    StatusResponse,
    StoreCreate,
    StoreResponse,
)
from treeline.schemas.index import ChangeSummary
from treeline.services import checkpoint_service, ledger_service
from treeline.services.datetime_service import humanize_age
from treeline.services.diff_service import DiffResult, FileInfo, directory_statuses
from treeline.services.hash_service import count_files
from treeline.services.store_service import StoreHandle, create_store, list_stores, open_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stores", tags=["stores"])

# Restores replace the live tree and must not overlap.
_restore_lock = asyncio.Lock()


def parse_version(raw: str, *, allow_live: bool = False) -> int:
    """Parse ``3`` or ``v3``; ``0`` or ``current`` mean the live tree when allowed."""
    text = raw.strip().lower()
    if allow_live and text == "current":
        return 0
    text = text.removeprefix("v")
    if not text.isdigit():
        raise ValueError(f"invalid version: {raw!r}")
    version = int(text)
    if version == 0 and not allow_live:
        raise ValueError("version must be a positive integer")
    return version


async def _store_response(session: AsyncSession, store: Store) -> StoreResponse:
    handle = open_store(store)
    return StoreResponse(
        id=store.id,
        name=store.name,
        root_path=store.root_path,
        live_path=str(handle.live_path),
        created_at=store.created_at,
        head_version=store.head_version,
        checkpoint_count=await ledger_service.count_checkpoints(session, store.id),
    )


async def _checkpoint_response(
    session: AsyncSession, checkpoint: Checkpoint, *, with_file_count: bool = True
) -> CheckpointResponse:
    return CheckpointResponse(
        version=checkpoint.version,
        message=checkpoint.message,
        created_at=checkpoint.created_at,
        age=humanize_age(checkpoint.created_at),
        parent_version=checkpoint.parent_version,
        duration_ms=checkpoint.duration_ms,
        file_count=await count_files(session, checkpoint.id) if with_file_count else None,
    )


def _info_response(info: FileInfo | None) -> FileInfoResponse | None:
    if info is None:
        return None
    return FileInfoResponse(
        size=info.size,
        mtime_ns=info.mtime_ns,
        mode=info.mode,
        is_symlink=info.is_symlink,
        target=info.target,
    )


def diff_response(result: DiffResult) -> DiffResponse:
    summary = result.summary()
    return DiffResponse(
        base=result.base,
        target=result.target,
        summary=ChangeSummary(
            added=summary.added, modified=summary.modified, deleted=summary.deleted
        ),
        changes=[
            ChangeResponse(
                path=change.path,
                change_type=change.change_type.value,
                old=_info_response(change.old_info),
                new=_info_response(change.new_info),
                lines_added=change.lines_added,
                lines_deleted=change.lines_deleted,
            )
            for change in result.changes
        ],
        directories={
            path: status.value for path, status in directory_statuses(result.changes).items()
        },
    )


# ── Stores ───────────────────────────────────────────


@router.get("", response_model=list[StoreResponse])
async def list_stores_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> list[StoreResponse]:
    return [await _store_response(session, store) for store in await list_stores(session)]


@router.post("", response_model=StoreResponse, status_code=201)
async def create_store_endpoint(
    body: StoreCreate,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> StoreResponse:
    """Register a store and create its directory layout."""
    store = await create_store(session, settings, body.name)
    return await _store_response(session, store)


# ── Checkpoints ──────────────────────────────────────


@router.get("/{store}/checkpoints", response_model=list[CheckpointResponse])
async def list_checkpoints_endpoint(
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    limit: int | None = Query(None, ge=1, le=10000),
) -> list[CheckpointResponse]:
    checkpoints = await checkpoint_service.list_checkpoints(session, handle, limit)
    return [
        await _checkpoint_response(session, cp, with_file_count=False) for cp in checkpoints
    ]


@router.post("/{store}/checkpoints", response_model=CheckpointCreateResponse, status_code=201)
async def create_checkpoint_endpoint(
    body: CheckpointCreate,
    response: Response,
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> CheckpointCreateResponse:
    """Snapshot the live tree. A lost version race returns 409 and may be retried."""
    result = await checkpoint_service.create_checkpoint(
        session,
        handle,
        settings,
        message=body.message,
        skip_if_unchanged=body.skip_if_unchanged,
    )
    if result.checkpoint is None:
        response.status_code = 200
        return CheckpointCreateResponse(created=False)
    return CheckpointCreateResponse(
        created=True, checkpoint=await _checkpoint_response(session, result.checkpoint)
    )


@router.get("/{store}/checkpoints/latest", response_model=CheckpointResponse)
async def latest_checkpoint_endpoint(
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> CheckpointResponse:
    checkpoint = await checkpoint_service.latest_checkpoint(session, handle)
    return await _checkpoint_response(session, checkpoint)


@router.get("/{store}/checkpoints/{version}", response_model=CheckpointResponse)
async def get_checkpoint_endpoint(
    version: str,
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> CheckpointResponse:
    checkpoint = await checkpoint_service.get_checkpoint(session, handle, parse_version(version))
    return await _checkpoint_response(session, checkpoint)


@router.delete("/{store}/checkpoints/{version}", status_code=204)
async def delete_checkpoint_endpoint(
    version: str,
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> Response:
    await checkpoint_service.delete_checkpoint(session, handle, parse_version(version))
    return Response(status_code=204)


@router.post("/{store}/checkpoints/{version}/restore", response_model=RestoreResponse)
async def restore_checkpoint_endpoint(
    version: str,
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    body: RestoreRequest | None = None,
) -> RestoreResponse:
    """Replace the live tree with a checkpoint, optionally snapshotting it first."""
    target = parse_version(version)
    pre_restore = body.pre_restore if body is not None else None
    async with _restore_lock:
        result = await checkpoint_service.restore_checkpoint(
            session, handle, settings, target, pre_restore=pre_restore
        )
    return RestoreResponse(version=result.version, pre_restore_version=result.pre_restore_version)


# ── Diff and status ──────────────────────────────────


@router.get("/{store}/diff/{from_version}/{to_version}", response_model=DiffResponse)
async def diff_endpoint(
    from_version: str,
    to_version: str,
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    lines: bool = Query(False, description="Count added/deleted lines of text files"),
) -> DiffResponse:
    """Compare two versions; ``0`` or ``current`` is the live tree."""
    result = await checkpoint_service.diff_versions(
        session,
        handle,
        settings,
        parse_version(from_version, allow_live=True),
        parse_version(to_version, allow_live=True),
        line_counts=lines,
    )
    return diff_response(result)


@router.get("/{store}/diff/{from_version}/{to_version}/file", response_model=FileDiffResponse)
async def diff_file_endpoint(
    from_version: str,
    to_version: str,
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    path: str = Query(..., min_length=1, max_length=4096),
) -> FileDiffResponse:
    result = await checkpoint_service.diff_file(
        session,
        handle,
        parse_version(from_version, allow_live=True),
        parse_version(to_version, allow_live=True),
        path,
    )
    return FileDiffResponse(
        path=result.path,
        binary=result.binary,
        diff=result.text,
        lines_added=result.lines_added,
        lines_deleted=result.lines_deleted,
    )


@router.get("/{store}/status", response_model=StatusResponse)
async def status_endpoint(
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> StatusResponse:
    """Changes in the live tree since the checkpoint it descends from."""
    result = await checkpoint_service.status(session, handle, settings)
    return StatusResponse(
        has_changes=result.has_changes,
        latest_version=result.base_version,
        diff=diff_response(result.diff) if result.diff is not None else None,
    )


@router.get("/{store}/files/{content_hash}", response_model=HashLookupResponse)
async def find_by_hash_endpoint(
    content_hash: str,
    handle: Annotated[StoreHandle, Depends(get_store_handle)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> HashLookupResponse:
    """Checkpoints that captured a file with this SHA-256 digest, newest first."""
    versions = await checkpoint_service.find_checkpoints_with_hash(session, handle, content_hash)
    return HashLookupResponse(content_hash=content_hash.strip().lower(), versions=versions)
