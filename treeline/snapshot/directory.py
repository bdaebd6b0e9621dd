"""Snapshot provider backed by plain directory copies.

Store layout::

    <root>/live/                      working tree
    <root>/checkpoints/v<N>/tree/     checkpoint trees
    <root>/checkpoints/.retired-v<N>/ trees whose ledger row is being deleted
    <root>/.staging/<id>/             copies in progress
    <root>/live.pre-restore/          previous live tree during a swap

Every publish is a rename of a fully-copied staging tree, so readers never see
a half-written checkpoint and a failed restore never touches the live tree.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
import uuid
from pathlib import Path

from treeline.exceptions import (
    ConflictError,
    IOFailureError,
    PreconditionFailedError,
    VerificationFailureError,
)
from treeline.snapshot.base import LIVE, Lease, SnapshotProvider

logger = logging.getLogger(__name__)

_SLOT_RE = re.compile(r"^v(\d+)$")
_RETIRED_RE = re.compile(r"^\.retired-v(\d+)$")


def tree_stats(root: Path) -> tuple[int, int]:
    """Return (entry_count, total_size) over regular files and symlinks under root."""
    count = 0
    total = 0
    for dirpath, dirnames, filenames in os.walk(root):
        # Symlinked directories show up in dirnames; count them as entries.
        for name in list(dirnames):
            full = os.path.join(dirpath, name)
            if os.path.islink(full):
                count += 1
                total += os.lstat(full).st_size
                dirnames.remove(name)
        for name in filenames:
            count += 1
            total += os.lstat(os.path.join(dirpath, name)).st_size
    return count, total


class DirectorySnapshotProvider(SnapshotProvider):
    """Snapshot provider that clones trees with a full recursive copy."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.live_path = root / "live"
        self.checkpoints_path = root / "checkpoints"
        self.staging_path = root / ".staging"
        self.backup_path = root / "live.pre-restore"
        self._lease_lock = threading.Lock()
        self._active_leases = 0

    def ensure_layout(self) -> None:
        """Create the live and checkpoint directories if missing."""
        self.live_path.mkdir(parents=True, exist_ok=True)
        self.checkpoints_path.mkdir(parents=True, exist_ok=True)

    # ── Paths ────────────────────────────────────────

    def slot_path(self, version: int) -> Path:
        return self.checkpoints_path / f"v{version}"

    def tree_path(self, version: int) -> Path:
        return self.slot_path(version) / "tree"

    def _retired_path(self, version: int) -> Path:
        return self.checkpoints_path / f".retired-v{version}"

    def _source_path(self, source: int) -> Path:
        if source == LIVE:
            return self.materialize_live()
        path = self.tree_path(source)
        if not path.is_dir():
            raise PreconditionFailedError(f"checkpoint v{source} files not found on disk")
        return path

    def _new_staging(self) -> Path:
        staging = self.staging_path / uuid.uuid4().hex
        staging.mkdir(parents=True)
        return staging

    @property
    def active_leases(self) -> int:
        with self._lease_lock:
            return self._active_leases

    # ── Copying ──────────────────────────────────────

    def _copy_tree(self, source: Path, destination: Path) -> None:
        """Copy a tree keeping symlinks as links and preserving mtimes."""
        shutil.copytree(source, destination, symlinks=True, copy_function=shutil.copy2)

    def _verify(self, source: Path, copy: Path) -> None:
        expected = tree_stats(source)
        actual = tree_stats(copy)
        if expected != actual:
            raise VerificationFailureError(
                f"copy of {source} has {actual[0]} entries / {actual[1]} bytes, "
                f"expected {expected[0]} entries / {expected[1]} bytes"
            )

    def _publish_live(self, staged: Path) -> None:
        os.rename(staged, self.live_path)

    # ── Contract ─────────────────────────────────────

    def materialize(self, version: int) -> Lease:
        path = self.tree_path(version)
        if not path.is_dir():
            raise PreconditionFailedError(f"checkpoint v{version} files not found on disk")
        with self._lease_lock:
            self._active_leases += 1
        logger.debug("Materialized v%d at %s", version, path)
        return Lease(path=path, version=version, _on_release=self._release_lease)

    def _release_lease(self) -> None:
        with self._lease_lock:
            self._active_leases -= 1

    def materialize_live(self) -> Path:
        if not self.live_path.is_dir():
            raise PreconditionFailedError(f"live tree is not available at {self.live_path}")
        return self.live_path

    def clone_version(self, source: int, destination: int) -> None:
        source_path = self._source_path(source)
        staging = self._new_staging()
        staged = staging / "tree"
        try:
            try:
                self._copy_tree(source_path, staged)
            except (OSError, shutil.Error) as exc:
                raise IOFailureError(f"failed to copy {source_path}: {exc}") from exc

            slot = self.slot_path(destination)
            try:
                slot.mkdir()
            except FileExistsError as exc:
                raise ConflictError(f"checkpoint slot v{destination} is already taken") from exc

            try:
                os.rename(staged, slot / "tree")
            except OSError as exc:
                shutil.rmtree(slot, ignore_errors=True)
                raise IOFailureError(f"failed to publish v{destination}: {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        logger.info("Cloned %s into v%d", "live" if source == LIVE else f"v{source}", destination)

    def swap_active(self, version: int) -> None:
        target = self.tree_path(version)
        if not target.is_dir():
            raise PreconditionFailedError(f"checkpoint v{version} files not found on disk")

        self._recover_swap()
        staging = self._new_staging()
        staged = staging / "tree"
        try:
            try:
                self._copy_tree(target, staged)
            except (OSError, shutil.Error) as exc:
                raise IOFailureError(f"failed to copy v{version}: {exc}") from exc
            self._verify(target, staged)

            had_live = self.live_path.exists()
            if had_live:
                try:
                    os.rename(self.live_path, self.backup_path)
                except OSError as exc:
                    raise IOFailureError(f"failed to back up live tree: {exc}") from exc

            try:
                self._publish_live(staged)
            except Exception as exc:
                if had_live:
                    if self.live_path.exists():
                        shutil.rmtree(self.live_path)
                    os.rename(self.backup_path, self.live_path)
                    logger.warning("Restore of v%d rolled back to previous live tree", version)
                if isinstance(exc, OSError):
                    raise IOFailureError(f"failed to activate v{version}: {exc}") from exc
                raise
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        shutil.rmtree(self.backup_path, ignore_errors=True)
        logger.info("Live tree replaced with v%d", version)

    def has_version(self, version: int) -> bool:
        return self.tree_path(version).is_dir()

    def discard_version(self, version: int) -> None:
        shutil.rmtree(self.slot_path(version), ignore_errors=True)
        logger.info("Discarded uncommitted v%d", version)

    def retire_version(self, version: int) -> None:
        slot = self.slot_path(version)
        if not slot.exists():
            logger.warning("Checkpoint v%d has no tree on disk; deleting record only", version)
            return
        try:
            os.rename(slot, self._retired_path(version))
        except OSError as exc:
            raise IOFailureError(f"failed to retire v{version}: {exc}") from exc

    def reinstate_version(self, version: int) -> None:
        retired = self._retired_path(version)
        if retired.exists():
            os.rename(retired, self.slot_path(version))

    def purge_retired(self, version: int) -> None:
        shutil.rmtree(self._retired_path(version), ignore_errors=True)

    # ── Recovery ─────────────────────────────────────

    def _recover_swap(self) -> None:
        if not self.backup_path.exists():
            return
        if self.live_path.exists():
            # The new tree was published; only the cleanup was interrupted.
            shutil.rmtree(self.backup_path)
            logger.info("Removed leftover pre-restore backup in %s", self.root)
        else:
            os.rename(self.backup_path, self.live_path)
            logger.warning("Rolled back interrupted restore in %s", self.root)

    def recover(self, known_versions: set[int]) -> None:
        """Finish or undo interrupted swaps, deletes and clones.

        Must only run while no other operation targets this store.
        """
        self._recover_swap()
        shutil.rmtree(self.staging_path, ignore_errors=True)
        if not self.checkpoints_path.is_dir():
            return

        for entry in sorted(self.checkpoints_path.iterdir()):
            retired = _RETIRED_RE.match(entry.name)
            if retired:
                version = int(retired.group(1))
                if version in known_versions:
                    self.reinstate_version(version)
                    logger.warning("Reinstated v%d after an interrupted delete", version)
                else:
                    self.purge_retired(version)
                    logger.info("Purged tree of deleted v%d", version)
                continue

            slot = _SLOT_RE.match(entry.name)
            if slot and int(slot.group(1)) not in known_versions:
                shutil.rmtree(entry, ignore_errors=True)
                logger.warning("Removed orphaned tree %s with no ledger record", entry.name)
