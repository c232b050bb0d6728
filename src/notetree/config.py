"""Configuration module for the notetree store."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notetree import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the default database
_USER_ENV = Path.home() / ".notetree" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back on bad values."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value %r for %s", raw, name)
        return default


class NoteTreeConfig(BaseModel):
    """Configuration for the notetree store."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTETREE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTETREE_DATABASE_PATH", "data/db/notetree.db")
        )
    )
    # Connection pool: fixed size, no overflow, bounded wait
    pool_size: int = Field(
        default_factory=lambda: _env_int("NOTETREE_POOL_SIZE", 5)
    )
    pool_timeout: float = Field(
        default_factory=lambda: float(_env_int("NOTETREE_POOL_TIMEOUT", 10))
    )
    # How long SQLite waits on a locked database file before giving up
    busy_timeout_ms: int = Field(
        default_factory=lambda: _env_int("NOTETREE_BUSY_TIMEOUT_MS", 5000)
    )
    # Upper bound on a single node's content
    max_content_length: int = Field(
        default_factory=lambda: _env_int("NOTETREE_MAX_CONTENT_LENGTH", 10000)
    )
    # The single local actor recorded as created_by
    default_user_id: str = Field(
        default=os.getenv("NOTETREE_DEFAULT_USER_ID", "default_user")
    )
    default_user_name: str = Field(
        default=os.getenv("NOTETREE_DEFAULT_USER_NAME", "Local User")
    )
    # Tag that marks a root node as a daily journal entry
    journal_tag: str = Field(default=os.getenv("NOTETREE_JOURNAL_TAG", "#Journal"))
    # Persistent log directory (None disables file logging)
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTETREE_LOG_DIR")) if os.getenv("NOTETREE_LOG_DIR") else None
        )
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_pool_config(self) -> "NoteTreeConfig":
        """Reject pool settings that would make the store unusable."""
        if self.pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        if self.pool_timeout <= 0:
            raise ValueError("pool_timeout must be > 0")
        if self.max_content_length < 1:
            raise ValueError("max_content_length must be >= 1")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self, database_path: Optional[Path] = None) -> str:
        """Get the database URL for SQLite, creating the parent directory."""
        db_path = self.get_absolute_path(Path(database_path or self.database_path))
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = NoteTreeConfig()
