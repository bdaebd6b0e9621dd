"""Tests for the directory-copy snapshot provider."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from tests.conftest import BASE_MTIME_NS, read_tree, write_file
from treeline.exceptions import (
    ConflictError,
    IOFailureError,
    PreconditionFailedError,
    VerificationFailureError,
)
from treeline.snapshot.base import LIVE
from treeline.snapshot.directory import DirectorySnapshotProvider, tree_stats


@pytest.fixture
def provider(tmp_path: Path) -> DirectorySnapshotProvider:
    p = DirectorySnapshotProvider(tmp_path / "store")
    p.ensure_layout()
    write_file(p.live_path, "a.txt", "hello", BASE_MTIME_NS)
    write_file(p.live_path, "src/main.py", "print('hi')\n", BASE_MTIME_NS)
    os.symlink("a.txt", p.live_path / "link")
    return p


class TestCloneVersion:
    def test_clone_live_preserves_content_and_metadata(
        self, provider: DirectorySnapshotProvider
    ) -> None:
        provider.clone_version(LIVE, 1)
        tree = provider.tree_path(1)
        assert read_tree(tree) == read_tree(provider.live_path)
        assert (tree / "a.txt").stat().st_mtime_ns == BASE_MTIME_NS
        assert os.readlink(tree / "link") == "a.txt"
        assert provider.has_version(1)

    def test_clone_from_checkpoint(self, provider: DirectorySnapshotProvider) -> None:
        provider.clone_version(LIVE, 1)
        write_file(provider.live_path, "a.txt", "changed")
        provider.clone_version(1, 2)
        assert read_tree(provider.tree_path(2))["a.txt"] == b"hello"

    def test_claimed_slot_raises_conflict(self, provider: DirectorySnapshotProvider) -> None:
        provider.clone_version(LIVE, 1)
        write_file(provider.live_path, "a.txt", "newer")
        with pytest.raises(ConflictError):
            provider.clone_version(LIVE, 1)
        assert read_tree(provider.tree_path(1))["a.txt"] == b"hello"
        assert list(provider.staging_path.iterdir()) == []

    def test_missing_live_tree_is_precondition_failure(self, tmp_path: Path) -> None:
        p = DirectorySnapshotProvider(tmp_path / "empty")
        with pytest.raises(PreconditionFailedError):
            p.clone_version(LIVE, 1)

    def test_copy_failure_is_io_failure(self, provider: DirectorySnapshotProvider) -> None:
        with patch.object(provider, "_copy_tree", side_effect=OSError("no space")):
            with pytest.raises(IOFailureError):
                provider.clone_version(LIVE, 1)
        assert not provider.slot_path(1).exists()


class TestMaterialize:
    def test_lease_points_at_tree_and_releases_once(
        self, provider: DirectorySnapshotProvider, caplog: pytest.LogCaptureFixture
    ) -> None:
        provider.clone_version(LIVE, 1)
        lease = provider.materialize(1)
        assert lease.path == provider.tree_path(1)
        assert provider.active_leases == 1
        lease.release()
        assert lease.released
        assert provider.active_leases == 0
        with caplog.at_level(logging.WARNING):
            lease.release()
        assert "released more than once" in caplog.text
        assert provider.active_leases == 0

    def test_missing_version_raises(self, provider: DirectorySnapshotProvider) -> None:
        with pytest.raises(PreconditionFailedError):
            provider.materialize(3)

    def test_materialize_live_requires_live_tree(self, tmp_path: Path) -> None:
        p = DirectorySnapshotProvider(tmp_path / "unmounted")
        with pytest.raises(PreconditionFailedError):
            p.materialize_live()


class TestSwapActive:
    def test_swap_replaces_live_tree(self, provider: DirectorySnapshotProvider) -> None:
        provider.clone_version(LIVE, 1)
        write_file(provider.live_path, "a.txt", "edited")
        write_file(provider.live_path, "extra.txt", "x")
        provider.swap_active(1)
        assert read_tree(provider.live_path) == read_tree(provider.tree_path(1))
        assert not provider.backup_path.exists()
        assert provider.has_version(1)

    def test_missing_target_is_precondition_failure(
        self, provider: DirectorySnapshotProvider
    ) -> None:
        before = read_tree(provider.live_path)
        with pytest.raises(PreconditionFailedError):
            provider.swap_active(9)
        assert read_tree(provider.live_path) == before

    def test_verification_mismatch_leaves_live_untouched(
        self, provider: DirectorySnapshotProvider
    ) -> None:
        provider.clone_version(LIVE, 1)
        write_file(provider.live_path, "a.txt", "work in progress")
        before = read_tree(provider.live_path)

        def lossy_copy(source: Path, destination: Path) -> None:
            shutil.copytree(source, destination, symlinks=True)
            (destination / "a.txt").unlink()

        with patch.object(provider, "_copy_tree", side_effect=lossy_copy):
            with pytest.raises(VerificationFailureError):
                provider.swap_active(1)
        assert read_tree(provider.live_path) == before
        assert not provider.backup_path.exists()
        assert list(provider.staging_path.iterdir()) == []

    def test_publish_failure_rolls_back(self, provider: DirectorySnapshotProvider) -> None:
        provider.clone_version(LIVE, 1)
        write_file(provider.live_path, "a.txt", "work in progress")
        before = read_tree(provider.live_path)

        with patch.object(provider, "_publish_live", side_effect=OSError("rename failed")):
            with pytest.raises(IOFailureError):
                provider.swap_active(1)
        assert read_tree(provider.live_path) == before
        assert not provider.backup_path.exists()


class TestRetireAndRecover:
    def test_retire_reinstate_and_purge(self, provider: DirectorySnapshotProvider) -> None:
        provider.clone_version(LIVE, 1)
        provider.retire_version(1)
        assert not provider.has_version(1)
        provider.reinstate_version(1)
        assert provider.has_version(1)
        provider.retire_version(1)
        provider.purge_retired(1)
        assert not provider.has_version(1)
        assert list(provider.checkpoints_path.iterdir()) == []

    def test_retire_without_tree_is_a_no_op(self, provider: DirectorySnapshotProvider) -> None:
        provider.retire_version(5)
        assert list(provider.checkpoints_path.iterdir()) == []

    def test_recover_rolls_back_interrupted_swap(
        self, provider: DirectorySnapshotProvider
    ) -> None:
        before = read_tree(provider.live_path)
        os.rename(provider.live_path, provider.backup_path)
        provider.recover(set())
        assert read_tree(provider.live_path) == before
        assert not provider.backup_path.exists()

    def test_recover_drops_backup_after_completed_swap(
        self, provider: DirectorySnapshotProvider
    ) -> None:
        shutil.copytree(provider.live_path, provider.backup_path, symlinks=True)
        provider.recover(set())
        assert provider.live_path.is_dir()
        assert not provider.backup_path.exists()

    def test_recover_reconciles_checkpoints_with_ledger(
        self, provider: DirectorySnapshotProvider
    ) -> None:
        for version in (1, 2, 3):
            provider.clone_version(LIVE, version)
        provider.retire_version(1)  # row still exists: delete was interrupted
        provider.retire_version(2)  # row gone: purge never ran
        (provider.staging_path / "leftover").mkdir(parents=True)

        provider.recover({1})

        assert provider.has_version(1)
        assert not provider.has_version(2)
        assert not provider.has_version(3)  # published but never committed
        assert sorted(p.name for p in provider.checkpoints_path.iterdir()) == ["v1"]
        assert not provider.staging_path.exists()


class TestTreeStats:
    def test_counts_files_and_symlinks(self, provider: DirectorySnapshotProvider) -> None:
        count, total = tree_stats(provider.live_path)
        assert count == 3
        assert total == len("hello") + len("print('hi')\n") + len("a.txt")
