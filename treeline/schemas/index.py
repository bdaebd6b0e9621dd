"""Index document schemas served to the timeline browser."""

from __future__ import annotations

from pydantic import BaseModel, Field


class FileEntry(BaseModel):
    """One file or symlink in a manifest."""

    path: str
    size: int = Field(ge=0)
    mtime_ns: int
    mode: int
    is_dir: bool = False
    is_symlink: bool = False
    target: str | None = None


class Manifest(BaseModel):
    """Full file listing of one version."""

    version: int
    files: dict[str, FileEntry] = Field(default_factory=dict)


class Delta(BaseModel):
    """Path-level changes between two versions."""

    from_version: int
    to_version: int
    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)


class ChangeSummary(BaseModel):
    added: int = 0
    modified: int = 0
    deleted: int = 0


class TimelineEntry(BaseModel):
    """Checkpoint metadata plus its change counts against its parent."""

    version: int
    message: str | None = None
    created_at: str
    file_count: int = 0
    parent_version: int | None = None
    summary: ChangeSummary = Field(default_factory=ChangeSummary)


class Index(BaseModel):
    """Everything the browser needs to render a store's history."""

    store_id: int
    store_name: str
    live_path: str
    checkpoints: list[TimelineEntry] = Field(default_factory=list)
    manifests: dict[str, Manifest] = Field(default_factory=dict)  # "v3" -> manifest
    deltas: dict[str, Delta] = Field(default_factory=dict)  # "v2:v3" -> delta


class IndexCache(BaseModel):
    """On-disk cache wrapper for a built index."""

    version: int
    generated_at: str
    checkpoint_versions: list[int]
    index: Index
