"""Version ledger: per-store checkpoint records and version allocation."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from treeline.exceptions import ConflictError, NotFoundError
from treeline.models.checkpoint import Checkpoint
from treeline.models.store import Store
from treeline.services.datetime_service import format_iso, parse_datetime

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def _next_version(session: AsyncSession, store: Store) -> int:
    """Return the next unused version for a store.

    Takes the larger of the store's high-water mark and the highest surviving
    row so that deleted versions are never handed out again.
    """
    stmt = select(func.max(Checkpoint.version)).where(Checkpoint.store_id == store.id)
    max_existing = (await session.execute(stmt)).scalar_one_or_none() or 0
    return max(store.last_version or 0, max_existing) + 1


async def _load_store(session: AsyncSession, store_id: int) -> Store:
    store = await session.get(Store, store_id, populate_existing=True)
    if store is None:
        raise NotFoundError(f"store {store_id} not found")
    return store


async def allocate_and_create(
    session: AsyncSession,
    store_id: int,
    *,
    message: str | None,
    created_at: datetime | str,
    parent_version: int | None = None,
    duration_ms: int | None = None,
    materialize: Callable[[int], Awaitable[None]] | None = None,
    discard: Callable[[int], Awaitable[None]] | None = None,
) -> Checkpoint:
    """Allocate the next version and record it in one transaction.

    ``materialize(version)`` runs after the version is chosen and before the
    commit. If the commit fails afterwards, ``discard(version)`` undoes it.
    ``duration_ms`` defaults to the time ``materialize`` took.
    Raises ConflictError when another writer committed the same version first.
    """
    store = await _load_store(session, store_id)
    version = await _next_version(session, store)

    checkpoint = Checkpoint(
        store_id=store.id,
        version=version,
        message=message or None,
        created_at=format_iso(parse_datetime(created_at)),
        parent_version=parent_version,
        duration_ms=duration_ms,
    )
    store.last_version = version
    session.add(checkpoint)

    materialized = False
    try:
        if materialize is not None:
            started = time.monotonic()
            await materialize(version)
            materialized = True
            if duration_ms is None:
                checkpoint.duration_ms = int((time.monotonic() - started) * 1000)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if materialized and discard is not None:
            await discard(version)
        logger.warning("Version v%d of store %d was claimed concurrently", version, store_id)
        raise ConflictError(f"version v{version} was allocated concurrently; retry") from exc
    except Exception:
        await session.rollback()
        if materialized and discard is not None:
            await discard(version)
        raise

    logger.info("Recorded checkpoint v%d for store %d", version, store_id)
    return checkpoint


async def get_checkpoint(session: AsyncSession, store_id: int, version: int) -> Checkpoint:
    """Return the checkpoint with the given version."""
    stmt = select(Checkpoint).where(Checkpoint.store_id == store_id, Checkpoint.version == version)
    checkpoint = (await session.execute(stmt)).scalar_one_or_none()
    if checkpoint is None:
        raise NotFoundError(f"checkpoint v{version} not found")
    return checkpoint


async def list_checkpoints(
    session: AsyncSession, store_id: int, limit: int | None = None
) -> list[Checkpoint]:
    """Return checkpoints ordered by version, newest first."""
    stmt = (
        select(Checkpoint)
        .where(Checkpoint.store_id == store_id)
        .order_by(Checkpoint.version.desc())
    )
    if limit is not None and limit > 0:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def latest_checkpoint(session: AsyncSession, store_id: int) -> Checkpoint:
    """Return the highest-versioned checkpoint, or raise NotFoundError if none exist."""
    checkpoints = await list_checkpoints(session, store_id, limit=1)
    if not checkpoints:
        raise NotFoundError("store has no checkpoints")
    return checkpoints[0]


async def count_checkpoints(session: AsyncSession, store_id: int) -> int:
    """Return the number of surviving checkpoints in a store."""
    stmt = select(func.count()).select_from(Checkpoint).where(Checkpoint.store_id == store_id)
    return int((await session.execute(stmt)).scalar_one())


async def delete_checkpoint(session: AsyncSession, store_id: int, version: int) -> None:
    """Delete a checkpoint row; its file versions cascade with it."""
    stmt = delete(Checkpoint).where(Checkpoint.store_id == store_id, Checkpoint.version == version)
    try:
        result = await session.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError(f"checkpoint v{version} not found")
        store = await _load_store(session, store_id)
        if store.head_version == version:
            store.head_version = None
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("Deleted checkpoint v%d of store %d", version, store_id)


async def set_head_version(session: AsyncSession, store_id: int, version: int | None) -> None:
    """Record which checkpoint the live tree now descends from."""
    store = await _load_store(session, store_id)
    store.head_version = version
    await session.commit()
