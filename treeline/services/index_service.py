"""Manifest/delta builder for the timeline browser, with an on-disk cache."""

from __future__ import annotations

import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from treeline.exceptions import CheckpointError, NotFoundError
from treeline.schemas.index import (
    ChangeSummary,
    Delta,
    FileEntry,
    Index,
    IndexCache,
    Manifest,
    TimelineEntry,
)
from treeline.services.datetime_service import format_iso, now_utc
from treeline.services.diff_service import walk_tree

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from treeline.models.checkpoint import Checkpoint
    from treeline.services.store_service import StoreHandle

logger = logging.getLogger(__name__)

INDEX_CACHE_FILE = "serve-index.json"
INDEX_CACHE_VERSION = 1


def manifest_key(version: int) -> str:
    return f"v{version}"


def delta_key(from_version: int, to_version: int) -> str:
    return f"v{from_version}:v{to_version}"


def manifest_from_tree(version: int, root: Path, ignore_patterns: Sequence[str] | None = None) -> Manifest:
    """Build a manifest by walking a materialized tree."""
    files = {
        path: FileEntry(
            path=info.path,
            size=info.size,
            mtime_ns=info.mtime_ns,
            mode=info.mode,
            is_dir=info.is_dir,
            is_symlink=info.is_symlink,
            target=info.target,
        )
        for path, info in walk_tree(root, ignore_patterns).items()
    }
    return Manifest(version=version, files=files)


def build_manifest(
    handle: StoreHandle, version: int, ignore_patterns: Sequence[str] | None = None
) -> Manifest:
    """Materialize a checkpoint, list it, and release it."""
    lease = handle.provider.materialize(version)
    try:
        return manifest_from_tree(version, lease.path, ignore_patterns)
    finally:
        lease.release()


def _entry_changed(before: FileEntry, after: FileEntry) -> bool:
    if before.size != after.size or before.mtime_ns != after.mtime_ns:
        return True
    return before.is_symlink and after.is_symlink and before.target != after.target


def compute_delta(before: Manifest | None, after: Manifest) -> Delta:
    """Classify the paths of two manifests; ``None`` stands for an empty tree."""
    before_files = before.files if before is not None else {}
    delta = Delta(from_version=before.version if before is not None else 0, to_version=after.version)
    for path, old in before_files.items():
        new = after.files.get(path)
        if new is None:
            delta.deleted.append(path)
        elif _entry_changed(old, new):
            delta.modified.append(path)
    delta.added = [path for path in after.files if path not in before_files]
    delta.added.sort()
    delta.modified.sort()
    delta.deleted.sort()
    return delta


def _build_manifests(
    handle: StoreHandle,
    versions: Sequence[int],
    workers: int,
    ignore_patterns: Sequence[str] | None,
) -> dict[int, Manifest]:
    def build(version: int) -> tuple[int, Manifest | None]:
        try:
            return version, build_manifest(handle, version, ignore_patterns)
        except (CheckpointError, OSError) as exc:
            logger.warning("Failed to build manifest for v%d: %s", version, exc)
            return version, None

    manifests: dict[int, Manifest] = {}
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        for version, manifest in pool.map(build, versions):
            if manifest is not None:
                manifests[version] = manifest
    return manifests


def build_index(
    handle: StoreHandle,
    checkpoints: Iterable[Checkpoint],
    *,
    workers: int = 4,
    ignore_patterns: Sequence[str] | None = None,
) -> Index:
    """Build the full index of a store.

    Each checkpoint is summarized against its recorded parent when that
    checkpoint still has a manifest, else against its nearest surviving
    predecessor. The first checkpoint is summarized against an empty tree.
    """
    ordered = sorted(checkpoints, key=lambda cp: cp.version)
    index = Index(store_id=handle.store_id, store_name=handle.name, live_path=str(handle.live_path))
    if not ordered:
        return index

    manifests = _build_manifests(handle, [cp.version for cp in ordered], workers, ignore_patterns)
    previous: int | None = None
    for cp in ordered:
        manifest = manifests.get(cp.version)
        if manifest is None:
            continue
        index.manifests[manifest_key(cp.version)] = manifest

        base = previous
        if cp.parent_version is not None and cp.parent_version in manifests:
            base = cp.parent_version
        if previous is not None:
            index.deltas[delta_key(previous, cp.version)] = compute_delta(
                manifests[previous], manifest
            )
        if base is not None and base != previous:
            index.deltas[delta_key(base, cp.version)] = compute_delta(manifests[base], manifest)

        delta = (
            index.deltas[delta_key(base, cp.version)]
            if base is not None
            else compute_delta(None, manifest)
        )
        index.checkpoints.append(
            TimelineEntry(
                version=cp.version,
                message=cp.message,
                created_at=cp.created_at,
                file_count=len(manifest.files),
                parent_version=cp.parent_version,
                summary=ChangeSummary(
                    added=len(delta.added),
                    modified=len(delta.modified),
                    deleted=len(delta.deleted),
                ),
            )
        )
        previous = cp.version

    logger.info(
        "Built index for store %s: %d checkpoints, %d deltas",
        handle.name,
        len(index.checkpoints),
        len(index.deltas),
    )
    return index


def delta_between(index: Index, from_version: int, to_version: int) -> Delta:
    """Return a stored delta, or compute it from the two manifests."""
    stored = index.deltas.get(delta_key(from_version, to_version))
    if stored is not None:
        return stored
    before = index.manifests.get(manifest_key(from_version))
    after = index.manifests.get(manifest_key(to_version))
    if before is None or after is None:
        raise NotFoundError("manifest not found for one or both versions")
    return compute_delta(before, after)


# ── Cache ────────────────────────────────────────────


def save_index_cache(index: Index, path: Path, checkpoint_versions: Iterable[int]) -> None:
    """Write the index cache atomically (temp file + rename).

    checkpoint_versions are the ledger versions the index was built from,
    including any whose tree could not be read.
    """
    cache = IndexCache(
        version=INDEX_CACHE_VERSION,
        generated_at=format_iso(now_utc()),
        checkpoint_versions=sorted(checkpoint_versions),
        index=index,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(cache.model_dump_json(indent=2))
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def load_index_cache(path: Path) -> IndexCache | None:
    """Load the cache file, or None if it is missing, unreadable or of another format."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Cannot read index cache %s: %s", path, exc)
        return None
    try:
        cache = IndexCache.model_validate_json(raw)
    except ValidationError as exc:
        logger.warning("Ignoring malformed index cache %s: %s", path, exc.error_count())
        return None
    if cache.version != INDEX_CACHE_VERSION:
        logger.info("Ignoring index cache version %d (want %d)", cache.version, INDEX_CACHE_VERSION)
        return None
    return cache


def is_cache_valid(cache: IndexCache | None, current_versions: Iterable[int]) -> bool:
    """A cache is valid only when its versions exactly match the ledger's."""
    if cache is None:
        return False
    return sorted(cache.checkpoint_versions) == sorted(current_versions)


def invalidate_index_cache(path: Path) -> None:
    path.unlink(missing_ok=True)


def load_or_build_index(
    handle: StoreHandle,
    checkpoints: Sequence[Checkpoint],
    *,
    workers: int = 4,
    ignore_patterns: Sequence[str] | None = None,
    use_cache: bool = True,
) -> Index:
    """Return the cached index when it matches the ledger, else rebuild it."""
    cache_path = handle.index_cache_path
    versions = [cp.version for cp in checkpoints]
    if use_cache:
        cache = load_index_cache(cache_path)
        if cache is not None and is_cache_valid(cache, versions):
            logger.debug("Using cached index for store %s", handle.name)
            return cache.index

    index = build_index(handle, checkpoints, workers=workers, ignore_patterns=ignore_patterns)
    if use_cache:
        try:
            save_index_cache(index, cache_path, versions)
        except OSError as exc:
            logger.warning("Failed to write index cache %s: %s", cache_path, exc)
    return index
