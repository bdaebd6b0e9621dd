"""Content hash tracker: incremental SHA-256 of a tree and its persistence."""

from __future__ import annotations

import hashlib
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError

from treeline.config import DEFAULT_SKIP_DIRS
from treeline.exceptions import IOFailureError
from treeline.models.checkpoint import Checkpoint, FileVersion

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_WORKERS = 4


@dataclass
class FileHash:
    """Hash of one file; ``error`` is set instead of a digest when it could not be read."""

    path: str
    content_hash: str = ""
    size: int = 0
    mtime_ns: int = 0
    error: str | None = None
    reused: bool = False


@dataclass(frozen=True)
class PriorHash:
    """A file version recorded by an earlier checkpoint."""

    content_hash: str
    size: int
    mtime_ns: int


@dataclass
class HashReport:
    """Summary of one hashing pass."""

    results: list[FileHash]
    hashed: int
    reused: int
    failed: int
    elapsed: float

    @property
    def successful(self) -> list[FileHash]:
        return [r for r in self.results if r.error is None]


def hash_file(file_path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    sha = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha.update(chunk)
    return sha.hexdigest()


def scan_files(root: Path, skip_dirs: Iterable[str] | None = None) -> list[str]:
    """Return relative paths of the regular files under root, sorted.

    Directories whose name exactly matches a skip entry are not descended.
    Symlinks are not followed or listed.
    """
    skip = set(DEFAULT_SKIP_DIRS if skip_dirs is None else skip_dirs)
    paths: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in skip]
        for filename in filenames:
            full = os.path.join(dirpath, filename)
            if os.path.islink(full) or not os.path.isfile(full):
                continue
            paths.append(Path(os.path.relpath(full, root)).as_posix())
    paths.sort()
    return paths


def _hash_one(root: Path, rel: str, previous: Mapping[str, PriorHash]) -> FileHash:
    full = root / rel
    try:
        st = full.stat()
        prior = previous.get(rel)
        if prior is not None and prior.size == st.st_size and prior.mtime_ns == st.st_mtime_ns:
            return FileHash(
                path=rel,
                content_hash=prior.content_hash,
                size=st.st_size,
                mtime_ns=st.st_mtime_ns,
                reused=True,
            )
        return FileHash(
            path=rel,
            content_hash=hash_file(full),
            size=st.st_size,
            mtime_ns=st.st_mtime_ns,
        )
    except OSError as exc:
        return FileHash(path=rel, error=str(exc))


def hash_tree(
    root: Path,
    previous: Mapping[str, PriorHash] | None = None,
    *,
    workers: int = DEFAULT_WORKERS,
    skip_dirs: Iterable[str] | None = None,
) -> HashReport:
    """Hash every regular file under root.

    Files whose size and mtime match ``previous`` keep the recorded digest
    without being read. Work is split over ``workers`` threads, each filling
    its own strided slots of a pre-sized result list.
    """
    started = time.monotonic()
    previous = previous or {}
    paths = scan_files(root, skip_dirs)
    results: list[FileHash | None] = [None] * len(paths)
    workers = max(1, min(workers, len(paths) or 1))

    def work(offset: int) -> None:
        for i in range(offset, len(paths), workers):
            results[i] = _hash_one(root, paths[i], previous)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        for future in [pool.submit(work, offset) for offset in range(workers)]:
            future.result()

    final = [r for r in results if r is not None]
    final.sort(key=lambda r: r.path)
    failed = sum(1 for r in final if r.error is not None)
    reused = sum(1 for r in final if r.reused)
    report = HashReport(
        results=final,
        hashed=len(final) - failed - reused,
        reused=reused,
        failed=failed,
        elapsed=time.monotonic() - started,
    )
    logger.info(
        "Hashed %s: %d read, %d reused, %d failed in %.2fs",
        root,
        report.hashed,
        report.reused,
        report.failed,
        report.elapsed,
    )
    for r in final:
        if r.error is not None:
            logger.warning("Could not hash %s: %s", r.path, r.error)
    return report


# ── Persistence ──────────────────────────────────────


async def store_file_versions(
    session: AsyncSession, checkpoint_id: int, results: Iterable[FileHash]
) -> int:
    """Insert all successful hashes for a checkpoint in one transaction.

    Returns the number of rows written. Any failure rolls back the whole batch.
    """
    count = 0
    try:
        for r in results:
            if r.error is not None:
                continue
            session.add(
                FileVersion(
                    checkpoint_id=checkpoint_id,
                    path=r.path,
                    content_hash=r.content_hash,
                    size=r.size,
                    mtime_ns=r.mtime_ns,
                )
            )
            count += 1
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise IOFailureError(f"failed to store file hashes: {exc}") from exc
    return count


async def get_file_versions(session: AsyncSession, checkpoint_id: int) -> dict[str, PriorHash]:
    """Load the recorded hashes of a checkpoint keyed by path."""
    stmt = select(FileVersion).where(FileVersion.checkpoint_id == checkpoint_id)
    result = await session.execute(stmt)
    return {
        row.path: PriorHash(content_hash=row.content_hash, size=row.size, mtime_ns=row.mtime_ns)
        for row in result.scalars().all()
    }


async def find_checkpoints_containing_hash(
    session: AsyncSession, store_id: int, content_hash: str
) -> list[int]:
    """Return versions that captured a file with this digest, newest first."""
    stmt = (
        select(distinct(Checkpoint.version))
        .join(FileVersion, FileVersion.checkpoint_id == Checkpoint.id)
        .where(Checkpoint.store_id == store_id, FileVersion.content_hash == content_hash)
        .order_by(Checkpoint.version.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_files(session: AsyncSession, checkpoint_id: int) -> int:
    stmt = (
        select(func.count())
        .select_from(FileVersion)
        .where(FileVersion.checkpoint_id == checkpoint_id)
    )
    return int((await session.execute(stmt)).scalar_one())


async def total_size(session: AsyncSession, checkpoint_id: int) -> int:
    stmt = select(func.coalesce(func.sum(FileVersion.size), 0)).where(
        FileVersion.checkpoint_id == checkpoint_id
    )
    return int((await session.execute(stmt)).scalar_one())
