"""Configuration module for the Tangle Notes store."""

import datetime
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from tangle_notes import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: lives alongside the data directory
_USER_ENV = Path.home() / ".tangle" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

VALID_BACKENDS = ("json", "sql")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class TangleConfig(BaseModel):
    """Configuration for the Tangle Notes store and server."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("TANGLE_BASE_DIR", "."))
    )
    # Which Entity Store backend to use: "json" (single document) or "sql"
    backend: str = Field(
        default_factory=lambda: os.getenv("TANGLE_BACKEND", "sql").lower()
    )
    # JSON document backend
    json_path: Path = Field(
        default_factory=lambda: Path(os.getenv("TANGLE_JSON_PATH", "data/notes.json"))
    )
    # Relational backend
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("TANGLE_DATABASE_PATH", "data/db/tangle.db")
        )
    )
    # Versioning policy: an update to a note untouched for longer than this
    # forks a new version. Zero or negative disables forking.
    fork_window_seconds: float = Field(
        default_factory=lambda: float(os.getenv("TANGLE_FORK_WINDOW_SECONDS", "3600"))
    )
    # How long a mutation may wait for the store write lock.
    # Zero means wait forever.
    write_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("TANGLE_WRITE_TIMEOUT_SECONDS", "0"))
    )
    # Canvas defaults for new notes
    default_note_width: int = Field(
        default_factory=lambda: int(os.getenv("TANGLE_DEFAULT_NOTE_WIDTH", "300"))
    )
    default_note_height: int = Field(
        default_factory=lambda: int(os.getenv("TANGLE_DEFAULT_NOTE_HEIGHT", "200"))
    )
    # Default destination for exported snapshots
    export_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("TANGLE_EXPORT_DIR", "data/exports"))
    )
    # Logging / metrics
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("TANGLE_LOG_DIR")) if os.getenv("TANGLE_LOG_DIR") else None
        )
    )
    metrics_enabled: bool = Field(
        default_factory=lambda: _env_bool("TANGLE_METRICS_ENABLED", "true")
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("TANGLE_SERVER_NAME", "tangle-notes"))
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_store_config(self) -> "TangleConfig":
        """Reject settings the store cannot run with."""
        if self.backend not in VALID_BACKENDS:
            raise ValueError(
                f"backend must be one of {', '.join(VALID_BACKENDS)}, got '{self.backend}'"
            )
        if self.default_note_width < 1 or self.default_note_height < 1:
            raise ValueError("default note width and height must be >= 1")
        if self.write_timeout_seconds < 0:
            raise ValueError("write_timeout_seconds must be >= 0")
        if self.fork_window_seconds <= 0:
            logger.warning("Fork window is %s; automatic versioning is disabled",
                           self.fork_window_seconds)
        return self

    @property
    def fork_window(self) -> Optional[datetime.timedelta]:
        """The versioning fork window, or None when forking is disabled."""
        if self.fork_window_seconds <= 0:
            return None
        return datetime.timedelta(seconds=self.fork_window_seconds)

    @property
    def write_timeout(self) -> Optional[float]:
        """Lock acquisition timeout in seconds, or None to wait forever."""
        return self.write_timeout_seconds or None

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_json_path(self) -> Path:
        """Get the absolute path of the JSON document, creating its directory."""
        json_path = self.get_absolute_path(self.json_path)
        json_path.parent.mkdir(parents=True, exist_ok=True)
        return json_path

    def get_export_dir(self) -> Path:
        """Get the absolute export directory, creating it if needed."""
        export_dir = self.get_absolute_path(self.export_dir)
        export_dir.mkdir(parents=True, exist_ok=True)
        return export_dir


# Process-wide default configuration
config = TangleConfig()
