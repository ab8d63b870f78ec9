"""Relational (SQLAlchemy/SQLite) backend for the entity store."""
import datetime
import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, literal_column, or_, select
from sqlalchemy.exc import SQLAlchemyError

from tangle_notes.exceptions import ErrorCode, StorageError
from tangle_notes.models.db_models import DBLink, DBNote, get_session_factory, init_db
from tangle_notes.models.schema import (Anchor, ChangeSet, Connection, ConnectionType,
                                        Note, Position, attach_children,
                                        ensure_timezone_aware)
from tangle_notes.storage.base import StorageBackend

logger = logging.getLogger(__name__)

# Rows come back in insertion order, matching the document backend
_NOTE_ORDER = literal_column("notes.rowid")
_LINK_ORDER = literal_column("links.rowid")


def _to_db_time(value: datetime.datetime) -> datetime.datetime:
    """SQLite has no timezone support: store naive UTC."""
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def _note_to_row(note: Note) -> DBNote:
    return DBNote(
        id=note.id,
        title=note.title,
        content=note.content,
        x=note.position.x,
        y=note.position.y,
        width=note.width,
        height=note.height,
        created_at=_to_db_time(note.created_at),
        updated_at=_to_db_time(note.updated_at),
        parent_id=note.parent_id,
        is_main=note.is_main,
        tags=list(note.tags),
    )


def _row_to_note(row: DBNote) -> Note:
    return Note(
        id=row.id,
        title=row.title or "",
        content=row.content or "",
        is_main=bool(row.is_main),
        position=Position(x=row.x or 0, y=row.y or 0),
        width=row.width,
        height=row.height,
        tags=list(row.tags or []),
        parent_id=row.parent_id,
        created_at=ensure_timezone_aware(row.created_at),
        updated_at=ensure_timezone_aware(row.updated_at),
    )


def _connection_to_row(connection: Connection) -> DBLink:
    return DBLink(
        id=connection.id,
        source_note_id=connection.source,
        source_line_index=connection.source_line_index,
        target_note_id=connection.target,
        target_line_index=connection.target_line_index,
        source_position=connection.source_anchor.value if connection.source_anchor else None,
        target_position=connection.target_anchor.value if connection.target_anchor else None,
        type=connection.type.value,
        label=connection.label,
        created_at=_to_db_time(connection.created_at),
    )


def _row_to_connection(row: DBLink) -> Connection:
    return Connection(
        id=row.id,
        source=row.source_note_id,
        target=row.target_note_id,
        type=ConnectionType(row.type or ConnectionType.DEFAULT.value),
        label=row.label or "",
        source_anchor=Anchor(row.source_position) if row.source_position else None,
        target_anchor=Anchor(row.target_position) if row.target_position else None,
        source_line_index=row.source_line_index or 0,
        target_line_index=row.target_line_index or 0,
        created_at=ensure_timezone_aware(row.created_at),
    )


class SqlBackend(StorageBackend):
    """Stores notes and links in two tables.

    Each :meth:`commit` runs in a single session and transaction, so a
    cascade or fork is written completely or not at all.
    """

    name = "sql"

    def __init__(self, db_url: Optional[str] = None, engine=None):
        if db_url is None and engine is None:
            raise ValueError("SqlBackend needs a database URL or an engine")
        self.db_url = db_url
        self.engine = engine
        self.session_factory = None

    def open(self) -> None:
        if self.session_factory is not None:
            return
        try:
            if self.engine is None:
                self.engine = init_db(self.db_url)
            self.session_factory = get_session_factory(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to open database",
                operation="open",
                path=self.db_url,
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e
        logger.debug(f"Opened relational store at {self.db_url or self.engine.url}")

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
        self.session_factory = None

    def _session(self):
        if self.session_factory is None:
            raise StorageError(
                "Relational backend is not open",
                code=ErrorCode.STORAGE_CLOSED,
            )
        return self.session_factory()

    def _read(self, operation: str, func):
        try:
            with self._session() as session:
                return func(session)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Database read failed during {operation}",
                operation=operation,
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    def get_note(self, note_id: str) -> Optional[Note]:
        def query(session):
            row = session.get(DBNote, note_id)
            if row is None:
                return None
            note = _row_to_note(row)
            note.children = list(session.scalars(
                select(DBNote.id).where(DBNote.parent_id == note_id).order_by(_NOTE_ORDER)
            ))
            return note

        return self._read("get_note", query)

    def get_all_notes(self) -> List[Note]:
        def query(session):
            rows = session.scalars(select(DBNote).order_by(_NOTE_ORDER)).all()
            return attach_children(_row_to_note(row) for row in rows)

        return self._read("get_all_notes", query)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        def query(session):
            row = session.get(DBLink, connection_id)
            return _row_to_connection(row) if row is not None else None

        return self._read("get_connection", query)

    def get_all_connections(self) -> List[Connection]:
        def query(session):
            rows = session.scalars(select(DBLink).order_by(_LINK_ORDER)).all()
            return [_row_to_connection(row) for row in rows]

        return self._read("get_all_connections", query)

    def get_connections_for_note(self, note_id: str) -> List[Connection]:
        def query(session):
            rows = session.scalars(
                select(DBLink)
                .where(or_(DBLink.source_note_id == note_id, DBLink.target_note_id == note_id))
                .order_by(_LINK_ORDER)
            ).all()
            return [_row_to_connection(row) for row in rows]

        return self._read("get_connections_for_note", query)

    def commit(self, changes: ChangeSet) -> None:
        def apply(session):
            if changes.deleted_connection_ids:
                session.execute(
                    delete(DBLink).where(DBLink.id.in_(changes.deleted_connection_ids))
                )
            if changes.deleted_note_ids:
                session.execute(
                    delete(DBNote).where(DBNote.id.in_(changes.deleted_note_ids))
                )
            for note in changes.notes:
                session.merge(_note_to_row(note))
            for connection in changes.connections:
                session.merge(_connection_to_row(connection))

        self._write("commit", apply)

    def replace_all(self, notes: Iterable[Note], connections: Iterable[Connection]) -> None:
        notes = list(notes)
        connections = list(connections)

        def apply(session):
            session.execute(delete(DBLink))
            session.execute(delete(DBNote))
            session.add_all([_note_to_row(note) for note in notes])
            # Flush notes first so their rowids follow document order
            session.flush()
            session.add_all([_connection_to_row(c) for c in connections])

        self._write("replace_all", apply)

    def _write(self, operation: str, func) -> None:
        session = self._session()
        try:
            func(session)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database {operation} failed, rolled back: {e}")
            raise StorageError(
                f"Database write failed during {operation}",
                operation=operation,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        finally:
            session.close()

    def describe(self) -> str:
        return f"sql:{self.db_url or self.engine.url}"
