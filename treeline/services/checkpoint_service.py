"""Checkpoint capabilities: create, list, delete, restore, diff and status.

Every operation takes an explicit ``StoreHandle``; there is no process-wide
store registry. Blocking filesystem work runs in worker threads.
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from treeline.exceptions import IOFailureError, NotFoundError, PreconditionFailedError
from treeline.models.store import Store
from treeline.services import hash_service, index_service, ledger_service
from treeline.services.datetime_service import now_utc
from treeline.services.diff_service import (
    DiffResult,
    FileDiff,
    annotate_line_counts,
    diff_directories,
    file_diff,
    version_label,
)
from treeline.snapshot.base import LIVE

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from treeline.config import Settings
    from treeline.models.checkpoint import Checkpoint
    from treeline.schemas.index import Index
    from treeline.services.hash_service import HashReport
    from treeline.services.store_service import StoreHandle

logger = logging.getLogger(__name__)

PRE_RESTORE_MESSAGE = "pre-restore"
_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass
class CreateResult:
    """Outcome of a create request."""

    checkpoint: Checkpoint | None
    hash_report: HashReport | None = None

    @property
    def created(self) -> bool:
        return self.checkpoint is not None


@dataclass
class RestoreResult:
    version: int
    pre_restore_version: int | None = None


@dataclass
class StatusResult:
    base_version: int | None
    diff: DiffResult | None

    @property
    def has_changes(self) -> bool:
        return self.diff is None or bool(self.diff.changes)


async def _head_version(session: AsyncSession, handle: StoreHandle) -> int | None:
    store = await session.get(Store, handle.store_id, populate_existing=True)
    if store is None:
        raise NotFoundError(f"store {handle.name!r} not found")
    return store.head_version


async def _base_checkpoint(session: AsyncSession, handle: StoreHandle) -> Checkpoint | None:
    """The checkpoint the live tree is compared against: head, else latest."""
    head = await _head_version(session, handle)
    if head is not None:
        try:
            return await ledger_service.get_checkpoint(session, handle.store_id, head)
        except NotFoundError:
            logger.debug("Head v%d of %s is gone; using latest", head, handle.name)
    try:
        return await ledger_service.latest_checkpoint(session, handle.store_id)
    except NotFoundError:
        return None


# ── Create ───────────────────────────────────────────


async def _record_hashes(
    session: AsyncSession,
    handle: StoreHandle,
    settings: Settings,
    checkpoint: Checkpoint,
) -> HashReport | None:
    previous: dict[str, hash_service.PriorHash] = {}
    if checkpoint.parent_version is not None:
        try:
            parent = await ledger_service.get_checkpoint(
                session, handle.store_id, checkpoint.parent_version
            )
            previous = await hash_service.get_file_versions(session, parent.id)
        except NotFoundError:
            previous = {}

    lease = handle.provider.materialize(checkpoint.version)
    try:
        report = await asyncio.to_thread(
            hash_service.hash_tree,
            lease.path,
            previous,
            workers=settings.hash_workers,
            skip_dirs=settings.skip_dirs,
        )
    finally:
        lease.release()

    try:
        await hash_service.store_file_versions(session, checkpoint.id, report.results)
    except IOFailureError as exc:
        # The snapshot is intact; only the hash index for it is missing.
        logger.error("Failed to record hashes for v%d: %s", checkpoint.version, exc)
        return None
    return report


async def create_checkpoint(
    session: AsyncSession,
    handle: StoreHandle,
    settings: Settings,
    *,
    message: str | None = None,
    skip_if_unchanged: bool = False,
) -> CreateResult:
    """Snapshot the live tree as the next version.

    With ``skip_if_unchanged`` nothing is created when the live tree matches
    the checkpoint it descends from.
    """
    await asyncio.to_thread(handle.provider.materialize_live)
    if skip_if_unchanged and not await has_changes(session, handle, settings):
        logger.info("No changes in %s since last checkpoint; skipping", handle.name)
        return CreateResult(checkpoint=None)

    parent_version = await _head_version(session, handle)

    async def publish(version: int) -> None:
        await asyncio.to_thread(handle.provider.clone_version, LIVE, version)

    async def discard(version: int) -> None:
        await asyncio.to_thread(handle.provider.discard_version, version)

    checkpoint = await ledger_service.allocate_and_create(
        session,
        handle.store_id,
        message=message,
        created_at=now_utc(),
        parent_version=parent_version,
        materialize=publish,
        discard=discard,
    )
    await ledger_service.set_head_version(session, handle.store_id, checkpoint.version)
    index_service.invalidate_index_cache(handle.index_cache_path)

    report = None
    if settings.track_content_hashes:
        report = await _record_hashes(session, handle, settings, checkpoint)
    logger.info(
        "Created checkpoint v%d of %s in %sms", checkpoint.version, handle.name, checkpoint.duration_ms
    )
    return CreateResult(checkpoint=checkpoint, hash_report=report)


# ── Read ─────────────────────────────────────────────


async def list_checkpoints(
    session: AsyncSession, handle: StoreHandle, limit: int | None = None
) -> list[Checkpoint]:
    return await ledger_service.list_checkpoints(session, handle.store_id, limit)


async def get_checkpoint(session: AsyncSession, handle: StoreHandle, version: int) -> Checkpoint:
    return await ledger_service.get_checkpoint(session, handle.store_id, version)


async def latest_checkpoint(session: AsyncSession, handle: StoreHandle) -> Checkpoint:
    return await ledger_service.latest_checkpoint(session, handle.store_id)


async def find_checkpoints_with_hash(
    session: AsyncSession, handle: StoreHandle, content_hash: str
) -> list[int]:
    """Versions whose recorded files include the given SHA-256 digest."""
    normalized = content_hash.strip().lower()
    if not _HASH_RE.match(normalized):
        raise ValueError("content hash must be 64 hexadecimal characters")
    return await hash_service.find_checkpoints_containing_hash(
        session, handle.store_id, normalized
    )


# ── Delete ───────────────────────────────────────────


async def delete_checkpoint(session: AsyncSession, handle: StoreHandle, version: int) -> None:
    """Remove a checkpoint's ledger row and its snapshot together."""
    await ledger_service.get_checkpoint(session, handle.store_id, version)
    await asyncio.to_thread(handle.provider.retire_version, version)
    try:
        await ledger_service.delete_checkpoint(session, handle.store_id, version)
    except Exception:
        await asyncio.to_thread(handle.provider.reinstate_version, version)
        raise
    await asyncio.to_thread(handle.provider.purge_retired, version)
    index_service.invalidate_index_cache(handle.index_cache_path)


# ── Restore ──────────────────────────────────────────


async def restore_checkpoint(
    session: AsyncSession,
    handle: StoreHandle,
    settings: Settings,
    version: int,
    *,
    pre_restore: bool | None = None,
) -> RestoreResult:
    """Replace the live tree with a checkpoint.

    Optionally snapshots the live tree first. If the swap fails the live tree
    is left as it was and any pre-restore checkpoint is kept. Callers must
    not run two restores of one store at once.
    """
    await ledger_service.get_checkpoint(session, handle.store_id, version)
    if not handle.provider.has_version(version):
        raise PreconditionFailedError(f"checkpoint v{version} files not found on disk")

    if pre_restore is None:
        pre_restore = settings.pre_restore_checkpoint
    result = RestoreResult(version=version)
    if pre_restore and handle.live_path.is_dir():
        created = await create_checkpoint(session, handle, settings, message=PRE_RESTORE_MESSAGE)
        if created.checkpoint is not None:
            result.pre_restore_version = created.checkpoint.version

    await asyncio.to_thread(handle.provider.swap_active, version)
    await ledger_service.set_head_version(session, handle.store_id, version)
    logger.info("Restored %s to v%d", handle.name, version)
    return result


# ── Diff and status ──────────────────────────────────


async def _require_versions(
    session: AsyncSession, handle: StoreHandle, *versions: int
) -> None:
    for version in versions:
        if version != LIVE:
            await ledger_service.get_checkpoint(session, handle.store_id, version)


def _open_tree(stack: ExitStack, handle: StoreHandle, version: int) -> Path:
    if version == LIVE:
        return handle.provider.materialize_live()
    lease = handle.provider.materialize(version)
    stack.callback(lease.release)
    return lease.path


def _diff_trees(
    handle: StoreHandle,
    from_version: int,
    to_version: int,
    ignore_patterns: Sequence[str],
    line_counts: bool,
) -> DiffResult:
    with ExitStack() as stack:
        before = _open_tree(stack, handle, from_version)
        after = _open_tree(stack, handle, to_version)
        changes = diff_directories(before, after, ignore_patterns)
        if line_counts:
            annotate_line_counts(changes, before, after)
    return DiffResult(
        base=version_label(from_version), target=version_label(to_version), changes=changes
    )


async def diff_versions(
    session: AsyncSession,
    handle: StoreHandle,
    settings: Settings,
    from_version: int,
    to_version: int = LIVE,
    *,
    line_counts: bool = False,
) -> DiffResult:
    """Compare two versions; ``LIVE`` (0) stands for the working tree."""
    await _require_versions(session, handle, from_version, to_version)
    return await asyncio.to_thread(
        _diff_trees, handle, from_version, to_version, settings.ignore_patterns, line_counts
    )


def _safe_relative(path: str) -> str:
    pure = PurePosixPath(path.strip())
    if not path.strip() or pure.is_absolute() or ".." in pure.parts:
        raise ValueError("path must be relative and stay inside the store")
    return pure.as_posix()


def _diff_one(handle: StoreHandle, from_version: int, to_version: int, rel_path: str) -> FileDiff:
    with ExitStack() as stack:
        before = _open_tree(stack, handle, from_version)
        after = _open_tree(stack, handle, to_version)
        return file_diff(before, after, rel_path)


async def diff_file(
    session: AsyncSession,
    handle: StoreHandle,
    from_version: int,
    to_version: int,
    path: str,
) -> FileDiff:
    rel_path = _safe_relative(path)
    await _require_versions(session, handle, from_version, to_version)
    return await asyncio.to_thread(_diff_one, handle, from_version, to_version, rel_path)


async def status(session: AsyncSession, handle: StoreHandle, settings: Settings) -> StatusResult:
    """Changes in the live tree since the checkpoint it descends from."""
    base = await _base_checkpoint(session, handle)
    if base is None:
        await asyncio.to_thread(handle.provider.materialize_live)
        return StatusResult(base_version=None, diff=None)
    diff = await asyncio.to_thread(
        _diff_trees, handle, base.version, LIVE, settings.ignore_patterns, False
    )
    return StatusResult(base_version=base.version, diff=diff)


async def has_changes(session: AsyncSession, handle: StoreHandle, settings: Settings) -> bool:
    """Whether the live tree differs from its base checkpoint, by size and mtime only."""
    return (await status(session, handle, settings)).has_changes


# ── Index ────────────────────────────────────────────


async def build_store_index(
    session: AsyncSession, handle: StoreHandle, settings: Settings
) -> Index:
    checkpoints = await ledger_service.list_checkpoints(session, handle.store_id)
    return await asyncio.to_thread(
        index_service.load_or_build_index,
        handle,
        checkpoints,
        workers=settings.index_workers,
        ignore_patterns=settings.ignore_patterns,
        use_cache=settings.index_cache_enabled,
    )
