"""Shared test fixtures for Treeline."""

from __future__ import annotations

import os
import shutil
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from treeline.config import Settings
from treeline.database import _enable_sqlite_foreign_keys
from treeline.main import create_app
from treeline.models.base import Base
from treeline.services.store_service import StoreHandle, create_store, open_store

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

# Fixed mtime so copies and rewrites compare deterministically.
BASE_MTIME_NS = 1_700_000_000_000_000_000


def write_file(root: Path, rel: str, content: str | bytes, mtime_ns: int | None = None) -> Path:
    """Write a file under root, creating parents, and optionally pin its mtime."""
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    if mtime_ns is not None:
        os.utime(path, ns=(mtime_ns, mtime_ns))
    return path


def replace_tree(root: Path, files: dict[str, str], mtime_ns: int = BASE_MTIME_NS) -> None:
    """Make root contain exactly ``files``, all stamped with one mtime."""
    if root.exists():
        shutil.rmtree(root)
    root.mkdir(parents=True)
    for rel, content in files.items():
        write_file(root, rel, content, mtime_ns)


def read_tree(root: Path) -> dict[str, bytes]:
    """Map relative path to bytes for every regular file under root."""
    result: dict[str, bytes] = {}
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = os.path.join(dirpath, name)
            if os.path.islink(full):
                continue
            rel = os.path.relpath(full, root).replace(os.sep, "/")
            with open(full, "rb") as f:
                result[rel] = f.read()
    return result


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (DB schema, stores
    directory) because ASGITransport does not trigger it.
    """
    from treeline.database import create_engine as create_db_engine

    app = create_app(settings)
    settings.validate_runtime_paths()
    settings.stores_dir.mkdir(parents=True, exist_ok=True)

    engine, session_factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.settings = settings

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await engine.dispose()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        stores_dir=tmp_path / "stores",
        frontend_dir=tmp_path / "frontend",
        hash_workers=2,
        index_workers=2,
        index_cache_enabled=False,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def store(db_session: AsyncSession, test_settings: Settings) -> StoreHandle:
    """A registered store with an empty live tree."""
    test_settings.stores_dir.mkdir(parents=True, exist_ok=True)
    created = await create_store(db_session, test_settings, "demo")
    return open_store(created)
