"""SQLAlchemy ORM models for Treeline."""

from treeline.models.base import Base
from treeline.models.checkpoint import Checkpoint, FileVersion
from treeline.models.store import Store

__all__ = [
    "Base",
    "Checkpoint",
    "FileVersion",
    "Store",
]
