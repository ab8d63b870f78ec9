"""Mirror commands: each mutation knows how to apply, undo and confirm itself."""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from tangle_notes.exceptions import DuplicateConnectionError
from tangle_notes.models.schema import (ChangeSet, Connection, Note, NotePatch,
                                        OperationResult, attach_children, utc_now)
from tangle_notes.services.cascade import CascadeManager
from tangle_notes.services.versioning import merge_patch

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "tmp-"


def temp_id() -> str:
    """An id for an entity that exists only in the mirror until confirmed."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex[:12]}"


class MirrorState:
    """Ordered in-memory copy of the store's notes and connections."""

    def __init__(self):
        self.notes: Dict[str, Note] = {}
        self.connections: Dict[str, Connection] = {}

    def replace(self, notes: Iterable[Note], connections: Iterable[Connection]) -> None:
        self.notes = {note.id: note.model_copy(deep=True) for note in notes}
        self.connections = {c.id: c for c in connections}
        self.rederive_children()

    def rederive_children(self) -> None:
        attach_children(self.notes.values())

    # Notes

    def put_note(self, note: Note) -> None:
        """Insert or replace in place (replacing keeps the position)."""
        self.notes[note.id] = note

    def remove_note(self, note_id: str) -> Optional[Tuple[int, Note]]:
        if note_id not in self.notes:
            return None
        index = list(self.notes).index(note_id)
        return index, self.notes.pop(note_id)

    def insert_note(self, index: int, note: Note) -> None:
        items = list(self.notes.items())
        items.insert(index, (note.id, note))
        self.notes = dict(items)

    # Connections

    def put_connection(self, connection: Connection) -> None:
        self.connections[connection.id] = connection

    def remove_connection(self, connection_id: str) -> Optional[Tuple[int, Connection]]:
        if connection_id not in self.connections:
            return None
        index = list(self.connections).index(connection_id)
        return index, self.connections.pop(connection_id)

    def insert_connection(self, index: int, connection: Connection) -> None:
        items = list(self.connections.items())
        items.insert(index, (connection.id, connection))
        self.connections = dict(items)

    def apply_changes(self, changes: ChangeSet) -> None:
        """Apply a change set committed by the store."""
        for connection_id in changes.deleted_connection_ids:
            self.connections.pop(connection_id, None)
        for note_id in changes.deleted_note_ids:
            self.notes.pop(note_id, None)
        for note in changes.notes:
            self.put_note(note.model_copy(deep=True))
        for connection in changes.connections:
            self.put_connection(connection)
        self.rederive_children()


@dataclass
class MirrorCommand:
    """Base class for optimistic mutations.

    ``apply`` changes the mirror immediately and records whatever ``revert``
    needs to undo it exactly. ``confirm`` swaps the optimistic change for
    the store's canonical one.
    """

    operation = "mutation"
    failure_value: Any = field(default=None, init=False)

    @property
    def entity_id(self) -> Optional[str]:
        return None

    def apply(self, state: MirrorState) -> None:
        raise NotImplementedError

    def revert(self, state: MirrorState) -> None:
        raise NotImplementedError

    def send(self, transport) -> OperationResult:
        raise NotImplementedError

    def confirm(self, state: MirrorState, result: OperationResult) -> None:
        self.revert(state)
        state.apply_changes(result.changes)


@dataclass
class CreateNoteCommand(MirrorCommand):
    data: Optional[Mapping[str, Any]] = None
    parent_id: Optional[str] = None
    temp_note_id: Optional[str] = field(default=None, init=False)

    operation = "create_note"

    @property
    def entity_id(self) -> Optional[str]:
        return self.temp_note_id

    def apply(self, state: MirrorState) -> None:
        patch = NotePatch.coerce(_without_parent(self.data))
        now = utc_now()
        note = Note(
            id=temp_id(),
            parent_id=self.parent_id,
            created_at=now,
            updated_at=now,
            **patch.changes(),
        )
        self.temp_note_id = note.id
        state.put_note(note)

    def revert(self, state: MirrorState) -> None:
        if self.temp_note_id:
            state.remove_note(self.temp_note_id)

    def send(self, transport) -> OperationResult:
        return transport.create_note(_without_parent(self.data), parent_id=self.parent_id)


@dataclass
class UpdateNoteCommand(MirrorCommand):
    note_id: str = ""
    patch: Optional[Mapping[str, Any]] = None
    previous: Optional[Note] = field(default=None, init=False)

    operation = "update_note"

    @property
    def entity_id(self) -> Optional[str]:
        return self.note_id

    def apply(self, state: MirrorState) -> None:
        current = state.notes.get(self.note_id)
        if current is None:
            # Unknown locally; let the store decide
            return
        self.previous = current.model_copy(deep=True)
        state.put_note(merge_patch(current, NotePatch.coerce(self.patch), utc_now()))

    def revert(self, state: MirrorState) -> None:
        if self.previous is not None:
            state.put_note(self.previous.model_copy(deep=True))

    def send(self, transport) -> OperationResult:
        return transport.update_note(self.note_id, self.patch)


@dataclass
class DeleteNoteCommand(MirrorCommand):
    note_id: str = ""
    removed_notes: List[Tuple[int, Note]] = field(default_factory=list, init=False)
    removed_connections: List[Tuple[int, Connection]] = field(default_factory=list, init=False)

    operation = "delete_note"

    def __post_init__(self):
        self.failure_value = False

    @property
    def entity_id(self) -> Optional[str]:
        return self.note_id

    def apply(self, state: MirrorState) -> None:
        if self.note_id not in state.notes:
            return
        plan = CascadeManager().plan_delete(
            self.note_id, state.notes.values(), state.connections.values()
        )
        for connection_id in plan.deleted_connection_ids:
            removed = state.remove_connection(connection_id)
            if removed:
                self.removed_connections.append(removed)
        for note_id in plan.deleted_note_ids:
            removed = state.remove_note(note_id)
            if removed:
                self.removed_notes.append(removed)

    def revert(self, state: MirrorState) -> None:
        # Reverse removal order puts every entity back at its old index
        for index, note in reversed(self.removed_notes):
            state.insert_note(index, note)
        for index, connection in reversed(self.removed_connections):
            state.insert_connection(index, connection)
        self.removed_notes = []
        self.removed_connections = []

    def send(self, transport) -> OperationResult:
        return transport.delete_note(self.note_id)


@dataclass
class CreateConnectionCommand(MirrorCommand):
    source_id: str = ""
    target_id: str = ""
    attrs: Optional[Mapping[str, Any]] = None
    temp_connection_id: Optional[str] = field(default=None, init=False)

    operation = "create_connection"

    @property
    def entity_id(self) -> Optional[str]:
        return f"{self.source_id}->{self.target_id}"

    def apply(self, state: MirrorState) -> None:
        pair = frozenset((self.source_id, self.target_id))
        for existing in state.connections.values():
            if existing.endpoints() == pair:
                raise DuplicateConnectionError(self.source_id, self.target_id, existing.id)
        attrs = {k: v for k, v in dict(self.attrs or {}).items()
                 if k not in ("id", "source", "target", "from", "to")}
        connection = Connection.model_validate({
            **attrs,
            "id": temp_id(),
            "source": self.source_id,
            "target": self.target_id,
        })
        self.temp_connection_id = connection.id
        state.put_connection(connection)

    def revert(self, state: MirrorState) -> None:
        if self.temp_connection_id:
            state.remove_connection(self.temp_connection_id)

    def send(self, transport) -> OperationResult:
        return transport.create_connection(self.source_id, self.target_id, self.attrs)


@dataclass
class DeleteConnectionCommand(MirrorCommand):
    connection_id: str = ""
    removed: Optional[Tuple[int, Connection]] = field(default=None, init=False)

    operation = "delete_connection"

    def __post_init__(self):
        self.failure_value = False

    @property
    def entity_id(self) -> Optional[str]:
        return self.connection_id

    def apply(self, state: MirrorState) -> None:
        self.removed = state.remove_connection(self.connection_id)

    def revert(self, state: MirrorState) -> None:
        if self.removed is not None:
            state.insert_connection(*self.removed)
            self.removed = None

    def send(self, transport) -> OperationResult:
        return transport.delete_connection(self.connection_id)


def _without_parent(data: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if data is None:
        return None
    if isinstance(data, NotePatch):
        return data.changes()
    return {k: v for k, v in dict(data).items() if k not in ("parent_id", "parentId")}
