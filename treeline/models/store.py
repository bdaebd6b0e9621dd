"""Store model."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from treeline.models.base import Base

if TYPE_CHECKING:
    from treeline.models.checkpoint import Checkpoint


class Store(Base):
    """A versioned directory tree and its checkpoint history."""

    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    root_path: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    # High-water mark of allocated versions; never decreases on delete.
    last_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    head_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    checkpoints: Mapped[list[Checkpoint]] = relationship(
        back_populates="store", cascade="all, delete-orphan", passive_deletes=True
    )
