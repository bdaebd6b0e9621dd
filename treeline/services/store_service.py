"""Store repository: registers stores and resolves per-request handles."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from treeline.exceptions import ConflictError, NotFoundError
from treeline.models.checkpoint import Checkpoint
from treeline.models.store import Store
from treeline.services.datetime_service import format_iso, now_utc
from treeline.services.index_service import INDEX_CACHE_FILE
from treeline.snapshot.directory import DirectorySnapshotProvider

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from treeline.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class StoreHandle:
    """Identity and snapshot provider of one store, passed into every operation."""

    store_id: int
    name: str
    root: Path
    provider: DirectorySnapshotProvider

    @property
    def live_path(self) -> Path:
        return self.provider.live_path

    @property
    def index_cache_path(self) -> Path:
        return self.root / INDEX_CACHE_FILE


def open_store(store: Store) -> StoreHandle:
    root = Path(store.root_path)
    return StoreHandle(
        store_id=store.id,
        name=store.name,
        root=root,
        provider=DirectorySnapshotProvider(root),
    )


async def create_store(session: AsyncSession, settings: Settings, name: str) -> Store:
    """Register a store and lay out its directories under ``stores_dir``."""
    root = (settings.stores_dir / name).resolve()
    store = Store(name=name, root_path=str(root), created_at=format_iso(now_utc()), last_version=0)
    session.add(store)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(f"store {name!r} already exists") from exc

    try:
        await asyncio.to_thread(DirectorySnapshotProvider(root).ensure_layout)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("Created store %s at %s", name, root)
    return store


async def get_store(session: AsyncSession, name: str) -> Store:
    stmt = select(Store).where(Store.name == name)
    store = (await session.execute(stmt)).scalar_one_or_none()
    if store is None:
        raise NotFoundError(f"store {name!r} not found")
    return store


async def resolve_store(session: AsyncSession, name: str) -> StoreHandle:
    return open_store(await get_store(session, name))


async def list_stores(session: AsyncSession) -> list[Store]:
    result = await session.execute(select(Store).order_by(Store.name))
    return list(result.scalars().all())


async def known_versions(session: AsyncSession, store_id: int) -> set[int]:
    stmt = select(Checkpoint.version).where(Checkpoint.store_id == store_id)
    return set((await session.execute(stmt)).scalars().all())


async def recover_stores(session: AsyncSession) -> None:
    """Repair every store's directories against the ledger after a restart."""
    for store in await list_stores(session):
        handle = open_store(store)
        versions = await known_versions(session, store.id)
        await asyncio.to_thread(handle.provider.recover, versions)
        await asyncio.to_thread(handle.provider.ensure_layout)
        logger.info("Recovered store %s (%d checkpoints)", store.name, len(versions))
