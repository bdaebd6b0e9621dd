"""Store and checkpoint request/response schemas."""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, Field

from treeline.schemas.index import ChangeSummary

StoreName = Annotated[str, Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")]


class StoreCreate(BaseModel):
    """Request to register a new store."""

    name: StoreName


class StoreResponse(BaseModel):
    id: int
    name: str
    root_path: str
    live_path: str
    created_at: str
    head_version: int | None = None
    checkpoint_count: int = 0


class CheckpointCreate(BaseModel):
    """Request to create a checkpoint of the live tree."""

    message: str | None = Field(default=None, max_length=10000)
    skip_if_unchanged: bool = False


class CheckpointResponse(BaseModel):
    """Checkpoint metadata."""

    version: int
    message: str | None = None
    created_at: str
    age: str | None = None
    parent_version: int | None = None
    duration_ms: int | None = None
    file_count: int | None = None


class CheckpointCreateResponse(BaseModel):
    """Result of a create request; ``checkpoint`` is None when it was skipped."""

    created: bool
    checkpoint: CheckpointResponse | None = None


class RestoreRequest(BaseModel):
    # None falls back to the server's pre_restore_checkpoint setting.
    pre_restore: bool | None = None


class RestoreResponse(BaseModel):
    version: int
    pre_restore_version: int | None = None


class FileInfoResponse(BaseModel):
    size: int
    mtime_ns: int
    mode: int
    is_symlink: bool = False
    target: str | None = None


class ChangeResponse(BaseModel):
    path: str
    change_type: str
    old: FileInfoResponse | None = None
    new: FileInfoResponse | None = None
    lines_added: int | None = None
    lines_deleted: int | None = None


class DiffResponse(BaseModel):
    """Changes between two versions, with per-directory aggregate status."""

    base: str
    target: str
    summary: ChangeSummary
    changes: list[ChangeResponse] = Field(default_factory=list)
    directories: dict[str, str] = Field(default_factory=dict)


class FileDiffResponse(BaseModel):
    path: str
    binary: bool
    diff: str
    lines_added: int = 0
    lines_deleted: int = 0


class StatusResponse(BaseModel):
    """Changes in the live tree since the latest checkpoint."""

    has_changes: bool
    latest_version: int | None = None
    diff: DiffResponse | None = None


class HashLookupResponse(BaseModel):
    content_hash: str
    versions: list[int]
