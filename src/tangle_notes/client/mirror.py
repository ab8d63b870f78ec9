"""Optimistic in-memory mirror of a note store."""
import logging
from typing import Any, Callable, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from tangle_notes.exceptions import ErrorCode, StorageError, TangleError, ValidationError
from tangle_notes.models.schema import Connection, Note, OperationResult
from tangle_notes.client.commands import (CreateConnectionCommand, CreateNoteCommand,
                                          DeleteConnectionCommand, DeleteNoteCommand,
                                          MirrorCommand, MirrorState, UpdateNoteCommand)

logger = logging.getLogger(__name__)


class ClientMirror:
    """Applies mutations locally before the store answers.

    On success the optimistic change is replaced by the store's canonical
    change set (a forked update comes back with a new id). On failure,
    including any exception raised by the transport, the exact inverse of the
    optimistic change is applied; nothing is reloaded.

    Args:
        transport: Anything with the :class:`NoteStore` operation surface.
        on_error: Called with a user-facing message whenever a mutation fails.
    """

    def __init__(self, transport, on_error: Optional[Callable[[str], Any]] = None):
        self.transport = transport
        self.on_error = on_error
        self.state = MirrorState()

    def load(self) -> None:
        """Fill the mirror from the store."""
        try:
            notes = self.transport.get_all_notes()
            connections = self.transport.get_all_connections()
        except TangleError:
            raise
        except Exception as e:
            raise StorageError(
                "Failed to load notes from the store",
                operation="load",
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e
        self.state.replace(notes, connections)
        logger.debug(f"Mirror loaded {len(notes)} notes, {len(connections)} connections")

    # =========================================================================
    # Mutations
    # =========================================================================

    def create_note(self, data: Optional[Mapping[str, Any]] = None,
                    parent_id: Optional[str] = None) -> OperationResult:
        if data is not None and not parent_id:
            parent_id = dict(data).get("parent_id") or dict(data).get("parentId")
        return self._dispatch(CreateNoteCommand(data=data, parent_id=parent_id))

    def update_note(self, note_id: str, patch: Optional[Mapping[str, Any]] = None) -> OperationResult:
        return self._dispatch(UpdateNoteCommand(note_id=note_id, patch=patch))

    def delete_note(self, note_id: str) -> OperationResult:
        return self._dispatch(DeleteNoteCommand(note_id=note_id))

    def create_connection(self, source_id: str, target_id: str,
                          attrs: Optional[Mapping[str, Any]] = None) -> OperationResult:
        return self._dispatch(
            CreateConnectionCommand(source_id=source_id, target_id=target_id, attrs=attrs)
        )

    def delete_connection(self, connection_id: str) -> OperationResult:
        return self._dispatch(DeleteConnectionCommand(connection_id=connection_id))

    def _dispatch(self, command: MirrorCommand) -> OperationResult:
        try:
            command.apply(self.state)
        except TangleError as e:
            # Rejected locally; the store is never called
            self.state.rederive_children()
            return self._fail(command, e)
        except PydanticValidationError as e:
            self.state.rederive_children()
            return self._fail(command, ValidationError(
                f"Invalid {command.operation} data: {e.errors()[0].get('msg', e)}"
            ))
        self.state.rederive_children()

        try:
            result = command.send(self.transport)
        except TangleError as e:
            result = OperationResult.fail(e, value=command.failure_value)
        except Exception as e:
            result = OperationResult.fail(
                StorageError(
                    f"Transport error during {command.operation}",
                    operation=command.operation,
                    original_error=e,
                ),
                value=command.failure_value,
            )

        if result.success:
            command.confirm(self.state, result)
            self.state.rederive_children()
            return result

        command.revert(self.state)
        self.state.rederive_children()
        return self._fail(command, result.error, result)

    def _fail(self, command: MirrorCommand, error: Optional[TangleError],
              result: Optional[OperationResult] = None) -> OperationResult:
        message = error.message if error else f"{command.operation} failed"
        logger.warning(
            f"{command.operation} rolled back (entity={command.entity_id}): {error or message}"
        )
        if self.on_error is not None:
            self.on_error(message)
        return result or OperationResult.fail(error, value=command.failure_value)

    # =========================================================================
    # Reads (local, no store round trip)
    # =========================================================================

    def get_note(self, note_id: str) -> Optional[Note]:
        note = self.state.notes.get(note_id)
        return note.model_copy(deep=True) if note else None

    def get_all_notes(self) -> List[Note]:
        return [note.model_copy(deep=True) for note in self.state.notes.values()]

    def get_all_connections(self) -> List[Connection]:
        return list(self.state.connections.values())

    def get_connected(self, note_id: str) -> List[Note]:
        neighbour_ids: List[str] = []
        for connection in self.state.connections.values():
            if connection.touches(note_id):
                other = connection.other_end(note_id)
                if other != note_id and other not in neighbour_ids:
                    neighbour_ids.append(other)
        return [self.get_note(i) for i in neighbour_ids if i in self.state.notes]
