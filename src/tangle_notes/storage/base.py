"""Abstract interface shared by the Entity Store backends."""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from tangle_notes.models.schema import ChangeSet, Connection, Note


class StorageBackend(ABC):
    """Durable mapping of id -> Note and id -> Connection.

    Backends return fresh model instances with ``children`` derived from the
    stored parent_id back-references; callers may mutate what they get back.
    Every write goes through :meth:`commit`, which applies a whole
    :class:`ChangeSet` or nothing and raises ``StorageError`` on failure.
    """

    name: str = "backend"

    def open(self) -> None:
        """Acquire resources (files, engines). Called once by the store."""

    def close(self) -> None:
        """Release resources. Safe to call more than once."""

    @abstractmethod
    def get_note(self, note_id: str) -> Optional[Note]:
        """Get a note by ID, or None."""

    @abstractmethod
    def get_all_notes(self) -> List[Note]:
        """All notes in creation order."""

    @abstractmethod
    def get_connection(self, connection_id: str) -> Optional[Connection]:
        """Get a connection by ID, or None."""

    @abstractmethod
    def get_all_connections(self) -> List[Connection]:
        """All connections in creation order."""

    @abstractmethod
    def get_connections_for_note(self, note_id: str) -> List[Connection]:
        """Connections with ``note_id`` at either end, in creation order."""

    @abstractmethod
    def commit(self, changes: ChangeSet) -> None:
        """Apply a change set atomically."""

    @abstractmethod
    def replace_all(self, notes: Iterable[Note], connections: Iterable[Connection]) -> None:
        """Atomically replace the whole store contents."""

    def has_note(self, note_id: str) -> bool:
        return self.get_note(note_id) is not None

    def describe(self) -> str:
        return self.name
