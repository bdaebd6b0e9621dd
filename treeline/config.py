"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SKIP_DIRS = [
    ".git",
    "node_modules",
    ".next",
    "vendor",
    "__pycache__",
    ".venv",
    ".DS_Store",
]

DEFAULT_IGNORE_PATTERNS = [
    ".DS_Store",
    ".Spotlight-V100",
    ".Trashes",
    ".fseventsd",
    ".TemporaryItems",
    "._*",
]


class Settings(BaseSettings):
    """Treeline application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/treeline.db"

    # Paths
    stores_dir: Path = Path("./stores")
    frontend_dir: Path = Path("./client/dist")

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # CORS
    cors_origins: list[str] = Field(default_factory=list)

    # Hashing and indexing
    hash_workers: int = Field(default=4, ge=1, le=64)
    index_workers: int = Field(default=4, ge=1, le=64)
    skip_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_SKIP_DIRS))
    ignore_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    track_content_hashes: bool = True
    index_cache_enabled: bool = True

    # Restore
    pre_restore_checkpoint: bool = True

    def validate_runtime_paths(self) -> None:
        """Validate that configured paths can hold store data."""
        violations: list[str] = []
        if self.stores_dir.exists() and not self.stores_dir.is_dir():
            violations.append(f"STORES_DIR is not a directory: {self.stores_dir}")
        if self.frontend_dir.exists() and not self.frontend_dir.is_dir():
            violations.append(f"FRONTEND_DIR is not a directory: {self.frontend_dir}")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid path configuration: {joined}")
