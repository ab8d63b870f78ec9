"""Single-document JSON backend for the entity store."""
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from tangle_notes.exceptions import ErrorCode, StorageError, TangleError
from tangle_notes.models.schema import ChangeSet, Connection, Note, attach_children
from tangle_notes.snapshot import (build_document, empty_document, parse_document,
                                   read_document, write_document)
from tangle_notes.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class JsonFileBackend(StorageBackend):
    """Keeps the whole store in one JSON document.

    The document is loaded into an in-memory cache on :meth:`open`. Each
    commit writes a complete new document to a temp file and renames it over
    the old one; the cache is swapped only after the rename succeeds, so a
    failed write leaves both the file and the cache at the prior state.
    """

    name = "json"

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._notes: Dict[str, Note] = {}
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.RLock()
        self._opened = False

    def open(self) -> None:
        with self._lock:
            if not self.path.exists():
                logger.info(f"Creating new notes document at {self.path}")
                write_document(self.path, empty_document())
            try:
                notes, connections = parse_document(read_document(self.path))
            except StorageError:
                raise
            except TangleError as e:
                raise StorageError(
                    f"Notes document {self.path.name} is corrupt",
                    operation="open",
                    path=str(self.path),
                    code=ErrorCode.STORAGE_READ_FAILED,
                    original_error=e,
                ) from e
            self._notes = {n.id: n for n in notes}
            self._connections = {c.id: c for c in connections}
            self._opened = True
            logger.debug(
                f"Loaded {len(self._notes)} notes and "
                f"{len(self._connections)} connections from {self.path.name}"
            )

    def close(self) -> None:
        with self._lock:
            self._notes = {}
            self._connections = {}
            self._opened = False

    def _check_open(self) -> None:
        if not self._opened:
            raise StorageError(
                "JSON backend is not open",
                path=str(self.path),
                code=ErrorCode.STORAGE_CLOSED,
            )

    def _fresh_notes(self) -> List[Note]:
        # Copies so callers can't mutate the cache
        return attach_children(n.model_copy(deep=True) for n in self._notes.values())

    def get_note(self, note_id: str) -> Optional[Note]:
        with self._lock:
            self._check_open()
            stored = self._notes.get(note_id)
            if stored is None:
                return None
            note = stored.model_copy(deep=True)
            note.children = [n.id for n in self._notes.values() if n.parent_id == note_id]
            return note

    def get_all_notes(self) -> List[Note]:
        with self._lock:
            self._check_open()
            return self._fresh_notes()

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            self._check_open()
            return self._connections.get(connection_id)

    def get_all_connections(self) -> List[Connection]:
        with self._lock:
            self._check_open()
            return list(self._connections.values())

    def get_connections_for_note(self, note_id: str) -> List[Connection]:
        with self._lock:
            self._check_open()
            return [c for c in self._connections.values() if c.touches(note_id)]

    def commit(self, changes: ChangeSet) -> None:
        with self._lock:
            self._check_open()
            notes = dict(self._notes)
            connections = dict(self._connections)

            for connection_id in changes.deleted_connection_ids:
                connections.pop(connection_id, None)
            for note_id in changes.deleted_note_ids:
                notes.pop(note_id, None)
            for note in changes.notes:
                stored = note.model_copy(deep=True)
                stored.children = []
                notes[stored.id] = stored
            for connection in changes.connections:
                connections[connection.id] = connection

            self._write(notes, connections)

    def replace_all(self, notes: Iterable[Note], connections: Iterable[Connection]) -> None:
        with self._lock:
            self._check_open()
            new_notes = {}
            for note in notes:
                stored = note.model_copy(deep=True)
                stored.children = []
                new_notes[stored.id] = stored
            new_connections = {c.id: c for c in connections}
            self._write(new_notes, new_connections)

    def _write(self, notes: Dict[str, Note], connections: Dict[str, Connection]) -> None:
        """Persist and swap the cache; the cache is untouched if the write fails."""
        write_document(self.path, build_document(notes.values(), connections.values()))
        self._notes = notes
        self._connections = connections

    def describe(self) -> str:
        return f"json:{self.path}"
