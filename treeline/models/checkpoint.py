"""Checkpoint and per-file content hash models."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from treeline.models.base import Base

if TYPE_CHECKING:
    from treeline.models.store import Store


class Checkpoint(Base):
    """Immutable point-in-time version of a store's tree."""

    __tablename__ = "checkpoints"
    __table_args__ = (
        UniqueConstraint("store_id", "version", name="uq_checkpoints_store_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    parent_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    store: Mapped[Store] = relationship(back_populates="checkpoints")
    file_versions: Mapped[list[FileVersion]] = relationship(
        back_populates="checkpoint", cascade="all, delete-orphan", passive_deletes=True
    )


class FileVersion(Base):
    """Content hash of one file as captured by one checkpoint."""

    __tablename__ = "file_versions"
    __table_args__ = (
        UniqueConstraint("checkpoint_id", "path", name="uq_file_versions_checkpoint_path"),
        Index("idx_file_versions_hash", "content_hash"),
        Index("idx_file_versions_path", "path", "checkpoint_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    checkpoint_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("checkpoints.id", ondelete="CASCADE"), nullable=False
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mtime_ns: Mapped[int] = mapped_column(BigInteger, nullable=False)

    checkpoint: Mapped[Checkpoint] = relationship(back_populates="file_versions")
