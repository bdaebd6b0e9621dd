"""Snapshot provider contract consumed by the versioning core."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = logging.getLogger(__name__)

# Version number that denotes the live working tree wherever a version is expected.
LIVE = 0


@dataclass
class Lease:
    """A materialized tree and the callback that gives it back.

    ``release()`` must be called exactly once on every exit path; extra calls
    are logged and ignored.
    """

    path: Path
    version: int
    _on_release: Callable[[], None] | None = field(default=None, repr=False)
    _released: bool = field(default=False, repr=False)

    def release(self) -> None:
        if self._released:
            logger.warning("Lease for v%d released more than once", self.version)
            return
        self._released = True
        if self._on_release is not None:
            self._on_release()

    @property
    def released(self) -> bool:
        return self._released


class SnapshotProvider(ABC):
    """Materializes, clones and swaps file-tree state for one store."""

    @abstractmethod
    def materialize(self, version: int) -> Lease:
        """Produce a navigable read-only directory for a checkpoint."""

    @abstractmethod
    def materialize_live(self) -> Path:
        """Return the live working tree; raises PreconditionFailedError if absent."""

    @abstractmethod
    def clone_version(self, source: int, destination: int) -> None:
        """Atomically duplicate ``source`` (a version or LIVE) into a new slot.

        Must preserve size, modification time and symlink targets. Raises
        ConflictError if the destination slot is already claimed.
        """

    @abstractmethod
    def swap_active(self, version: int) -> None:
        """Replace the live tree with a checkpoint's tree, or leave it untouched."""

    @abstractmethod
    def has_version(self, version: int) -> bool:
        """Whether a checkpoint's tree is present."""

    @abstractmethod
    def discard_version(self, version: int) -> None:
        """Remove a published checkpoint tree whose ledger row never committed."""

    @abstractmethod
    def retire_version(self, version: int) -> None:
        """Move a checkpoint tree aside ahead of deleting its ledger row."""

    @abstractmethod
    def reinstate_version(self, version: int) -> None:
        """Undo ``retire_version`` after the ledger delete failed."""

    @abstractmethod
    def purge_retired(self, version: int) -> None:
        """Remove a retired tree once its ledger row is gone."""

    @abstractmethod
    def recover(self, known_versions: set[int]) -> None:
        """Repair state left behind by an interrupted operation."""
