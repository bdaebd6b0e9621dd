"""Tree diff engine: classify changes between two directory trees."""

from __future__ import annotations

import difflib
import fnmatch
import logging
import os
import stat
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from treeline.config import DEFAULT_IGNORE_PATTERNS
from treeline.exceptions import NotFoundError
from treeline.snapshot.base import LIVE

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

logger = logging.getLogger(__name__)

BINARY_SNIFF_BYTES = 8192


class ChangeType(StrEnum):
    """Kind of change a path went through between two trees."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass
class FileInfo:
    """Metadata of one tracked entry (regular file or symlink)."""

    path: str
    size: int
    mtime_ns: int
    mode: int
    is_dir: bool = False
    is_symlink: bool = False
    target: str | None = None


@dataclass
class Change:
    """A single classified path change."""

    path: str
    change_type: ChangeType
    old_info: FileInfo | None = None
    new_info: FileInfo | None = None
    lines_added: int | None = None
    lines_deleted: int | None = None


@dataclass
class DiffSummary:
    added: int = 0
    modified: int = 0
    deleted: int = 0


@dataclass
class DiffResult:
    """Changes between a base and a target tree."""

    base: str
    target: str
    changes: list[Change] = field(default_factory=list)

    def summary(self) -> DiffSummary:
        counts = DiffSummary()
        for change in self.changes:
            if change.change_type is ChangeType.ADDED:
                counts.added += 1
            elif change.change_type is ChangeType.MODIFIED:
                counts.modified += 1
            else:
                counts.deleted += 1
        return counts


@dataclass
class FileDiff:
    """Rendered difference of a single file."""

    path: str
    binary: bool
    text: str
    lines_added: int = 0
    lines_deleted: int = 0


def version_label(version: int) -> str:
    return "current" if version == LIVE else f"v{version}"


def should_ignore(name: str, patterns: Iterable[str]) -> bool:
    """Whether a path component matches an ignore entry exactly or by wildcard."""
    for pattern in patterns:
        if name == pattern:
            return True
        if any(c in pattern for c in "*?[") and fnmatch.fnmatchcase(name, pattern):
            return True
    return False


def walk_tree(root: Path, ignore_patterns: Sequence[str] | None = None) -> dict[str, FileInfo]:
    """Map relative path to FileInfo for every regular file and symlink under root.

    Directories are not entries; symlinks are recorded and never followed.
    Ignored names prune whole subtrees. Unreadable entries are skipped.
    """
    patterns = list(DEFAULT_IGNORE_PATTERNS if ignore_patterns is None else ignore_patterns)
    files: dict[str, FileInfo] = {}

    def visit(directory: str, prefix: str) -> None:
        try:
            with os.scandir(directory) as it:
                entries = list(it)
        except OSError:
            return
        for entry in entries:
            if should_ignore(entry.name, patterns):
                continue
            rel = f"{prefix}{entry.name}"
            try:
                st = entry.stat(follow_symlinks=False)
            except OSError:
                continue
            if stat.S_ISLNK(st.st_mode):
                try:
                    target: str | None = os.readlink(entry.path)
                except OSError:
                    target = None
                files[rel] = FileInfo(
                    path=rel,
                    size=st.st_size,
                    mtime_ns=st.st_mtime_ns,
                    mode=stat.S_IMODE(st.st_mode),
                    is_symlink=True,
                    target=target,
                )
            elif stat.S_ISDIR(st.st_mode):
                visit(entry.path, f"{rel}/")
            elif stat.S_ISREG(st.st_mode):
                files[rel] = FileInfo(
                    path=rel,
                    size=st.st_size,
                    mtime_ns=st.st_mtime_ns,
                    mode=stat.S_IMODE(st.st_mode),
                )

    visit(str(root), "")
    return files


def is_modified(before: FileInfo, after: FileInfo) -> bool:
    if before.size != after.size or before.mtime_ns != after.mtime_ns:
        return True
    return before.is_symlink and after.is_symlink and before.target != after.target


def compare_trees(
    before: Mapping[str, FileInfo], after: Mapping[str, FileInfo]
) -> list[Change]:
    """Classify every path of two walked trees, sorted by path."""
    changes: list[Change] = []
    for path, old in before.items():
        new = after.get(path)
        if new is None:
            changes.append(Change(path=path, change_type=ChangeType.DELETED, old_info=old))
        elif is_modified(old, new):
            changes.append(
                Change(path=path, change_type=ChangeType.MODIFIED, old_info=old, new_info=new)
            )
    for path, new in after.items():
        if path not in before:
            changes.append(Change(path=path, change_type=ChangeType.ADDED, new_info=new))
    changes.sort(key=lambda c: c.path)
    return changes


def diff_directories(
    before_root: Path, after_root: Path, ignore_patterns: Sequence[str] | None = None
) -> list[Change]:
    return compare_trees(
        walk_tree(before_root, ignore_patterns), walk_tree(after_root, ignore_patterns)
    )


# ── Directory aggregation ────────────────────────────


def _aggregate(kinds: set[ChangeType]) -> ChangeType | None:
    if not kinds:
        return None
    if ChangeType.ADDED in kinds and ChangeType.DELETED in kinds:
        return ChangeType.MODIFIED
    if ChangeType.ADDED in kinds:
        return ChangeType.ADDED
    if ChangeType.DELETED in kinds:
        return ChangeType.DELETED
    return ChangeType.MODIFIED


def directory_status(changes: Iterable[Change], directory: str) -> ChangeType | None:
    """Aggregate the changes beneath a directory for display.

    Precedence: added and deleted together collapse to modified, then any
    added, then any deleted, then modified. No changes means no status.
    """
    prefix = directory.strip("/") + "/"
    if prefix == "/":
        prefix = ""
    kinds = {c.change_type for c in changes if c.path.startswith(prefix)}
    return _aggregate(kinds)


def directory_statuses(changes: Iterable[Change]) -> dict[str, ChangeType]:
    """Aggregate status of every ancestor directory of a changed path."""
    kinds: dict[str, set[ChangeType]] = {}
    for change in changes:
        for parent in PurePosixPath(change.path).parents:
            key = parent.as_posix()
            if key == ".":
                continue
            kinds.setdefault(key, set()).add(change.change_type)
    result: dict[str, ChangeType] = {}
    for directory, found in sorted(kinds.items()):
        status = _aggregate(found)
        if status is not None:
            result[directory] = status
    return result


# ── Single-file diffs ────────────────────────────────


def is_binary_file(path: Path) -> bool:
    """A file is binary if a NUL byte occurs in its first 8 KiB."""
    try:
        with open(path, "rb") as f:
            head = f.read(BINARY_SNIFF_BYTES)
    except OSError:
        return False
    return b"\0" in head


def humanize_bytes(size: int) -> str:
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"


def count_lines(diff_text: str) -> tuple[int, int]:
    """Count added and deleted lines of a unified diff."""
    added = deleted = 0
    for line in diff_text.splitlines():
        if line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            deleted += 1
    return added, deleted


def _read_lines(path: Path | None) -> list[str]:
    if path is None:
        return []
    with open(path, encoding="utf-8", errors="replace") as f:
        lines = f.readlines()
    # Keep one diff line per source line when the file lacks a final newline.
    if lines and not lines[-1].endswith("\n"):
        lines[-1] += "\n"
    return lines


def _existing(root: Path | None, rel_path: str) -> Path | None:
    if root is None:
        return None
    full = root / rel_path
    if full.is_file():
        return full
    return None


def file_diff(before_root: Path | None, after_root: Path | None, rel_path: str) -> FileDiff:
    """Diff one file between two trees.

    Text files get a unified diff labelled ``a/<path>`` and ``b/<path>``;
    binary files get a one-line size summary. A side where the file is absent
    counts as empty.
    """
    before = _existing(before_root, rel_path)
    after = _existing(after_root, rel_path)
    if before is None and after is None:
        raise NotFoundError(f"{rel_path} does not exist in either version")

    if (before is not None and is_binary_file(before)) or (
        after is not None and is_binary_file(after)
    ):
        before_size = before.stat().st_size if before is not None else 0
        after_size = after.stat().st_size if after is not None else 0
        text = (
            f"Binary file {rel_path} changed "
            f"({humanize_bytes(before_size)} → {humanize_bytes(after_size)})\n"
        )
        return FileDiff(path=rel_path, binary=True, text=text)

    text = "".join(
        difflib.unified_diff(
            _read_lines(before),
            _read_lines(after),
            fromfile=f"a/{rel_path}",
            tofile=f"b/{rel_path}",
        )
    )
    added, deleted = count_lines(text)
    return FileDiff(path=rel_path, binary=False, text=text, lines_added=added, lines_deleted=deleted)


def annotate_line_counts(
    changes: Iterable[Change], before_root: Path, after_root: Path
) -> None:
    """Fill ``lines_added``/``lines_deleted`` on text file changes in place."""
    for change in changes:
        info = change.new_info or change.old_info
        if info is None or info.is_symlink:
            continue
        try:
            result = file_diff(before_root, after_root, change.path)
        except (OSError, NotFoundError) as exc:
            logger.debug("Skipping line count for %s: %s", change.path, exc)
            continue
        if not result.binary:
            change.lines_added = result.lines_added
            change.lines_deleted = result.lines_deleted
