"""SQLAlchemy database models for the relational Entity Store backend."""
import datetime
import logging

from sqlalchemy import (JSON, Boolean, Column, DateTime, ForeignKey, Integer,
                        String, Text, create_engine, event, inspect, text)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from tangle_notes.models.schema import ConnectionType

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(64), primary_key=True, index=True)
    title = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    x = Column(Integer, nullable=False, default=0)
    y = Column(Integer, nullable=False, default=0)
    width = Column(Integer, nullable=False, default=300)
    height = Column(Integer, nullable=False, default=200)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    parent_id = Column(String(64), ForeignKey("notes.id"), nullable=True, index=True)
    is_main = Column(Boolean, nullable=False, default=False)
    tags = Column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBLink(Base):
    """Database model for a connection between notes."""
    __tablename__ = "links"
    id = Column(String(64), primary_key=True, index=True)
    source_note_id = Column(String(64), ForeignKey("notes.id"), nullable=False, index=True)
    source_line_index = Column(Integer, nullable=False, default=0)
    target_note_id = Column(String(64), ForeignKey("notes.id"), nullable=False, index=True)
    target_line_index = Column(Integer, nullable=False, default=0)
    source_position = Column(String(16), nullable=True)
    target_position = Column(String(16), nullable=True)
    type = Column(String(32), default=ConnectionType.DEFAULT.value, nullable=False)
    label = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of link."""
        return (
            f"<Link(id='{self.id}', source='{self.source_note_id}', "
            f"target='{self.target_note_id}', type='{self.type}')>"
        )


# Columns added after the first release of each table: (table, column, DDL)
_ADDITIVE_COLUMNS = (
    ("notes", "is_main", "BOOLEAN NOT NULL DEFAULT 0"),
    ("notes", "tags", "JSON NOT NULL DEFAULT '[]'"),
    ("links", "source_position", "VARCHAR(16)"),
    ("links", "target_position", "VARCHAR(16)"),
    ("links", "label", "TEXT NOT NULL DEFAULT ''"),
)


def init_db(db_url: str):
    """Create an engine for ``db_url`` with hardened SQLite settings.

    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode (good balance of safety vs speed)
    - QueuePool for connection reuse with size limits
    - Pool pre-ping to detect stale connections

    Tables are created if missing and additive column migrations are applied.
    """
    if db_url.startswith("sqlite:///:memory:") or db_url == "sqlite://":
        from sqlalchemy.pool import StaticPool

        # A single shared connection keeps the in-memory database alive
        engine = create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            db_url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
            # Pooled connections are handed between threads; writes are
            # serialised by the store's lock
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    Base.metadata.create_all(engine)
    _migrate_additive_columns(engine)
    return engine


def _migrate_additive_columns(engine) -> None:
    """Migration: add columns introduced after a table was first created.

    SQLite doesn't support IF NOT EXISTS for ADD COLUMN, so we check
    the schema first. This is idempotent and safe to run multiple times.
    """
    inspector = inspect(engine)
    existing = {
        table: {col["name"] for col in inspector.get_columns(table)}
        for table in ("notes", "links")
    }
    with engine.connect() as conn:
        for table, column, ddl in _ADDITIVE_COLUMNS:
            if column not in existing[table]:
                logger.info(f"Migrating {table}: adding column {column}")
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
        conn.commit()


def get_session_factory(engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
