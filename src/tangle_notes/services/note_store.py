"""The entity store: every note and connection mutation goes through here."""
import datetime
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from tangle_notes.exceptions import (ConnectionNotFoundError, DuplicateConnectionError,
                                     ErrorCode, LinkError, NoteNotFoundError, StorageError,
                                     StorageTimeoutError, TangleError, ValidationError)
from tangle_notes.models.schema import (ChangeSet, Connection, ConnectionType, Note,
                                        NotePatch, OperationResult, ensure_timezone_aware,
                                        generate_id, utc_now)
from tangle_notes.observability import timed_operation, traced
from tangle_notes.services.cascade import CascadeManager, ValidationReport
from tangle_notes.services.versioning import DEFAULT_FORK_WINDOW, VersioningPolicy
from tangle_notes.snapshot import (build_document, default_export_path, parse_document,
                                   read_document, write_document)
from tangle_notes.storage.base import StorageBackend

logger = logging.getLogger(__name__)

NoteData = Union[NotePatch, Mapping[str, Any], None]

# Connection fields callers may not choose
_RESERVED_CONNECTION_KEYS = ("id", "source", "target", "created_at", "createdAt",
                             "from", "to")


def _coerce_patch(data: NoteData) -> NotePatch:
    try:
        return NotePatch.coerce(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid note fields: {e.errors()[0].get('msg', e)}",
            code=ErrorCode.NOTE_VALIDATION_FAILED,
        ) from e
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Note data must be a mapping, got {type(data).__name__}",
            code=ErrorCode.NOTE_VALIDATION_FAILED,
        ) from e


class NoteStore:
    """Authoritative store of notes and connections.

    Mutations return an :class:`OperationResult` and never raise
    ``TangleError`` to the caller: failures are logged with the operation and
    entity id and reported in the result. Each mutation is computed as a
    :class:`ChangeSet` and committed by the backend in one unit, under a
    single store-wide write lock.

    Reads return plain values and raise ``StorageError`` if the backend
    cannot be read.

    Usage::

        with NoteStore(JsonFileBackend("notes.json")) as store:
            result = store.create_note({"title": "Alpha"})
    """

    def __init__(
        self,
        backend: StorageBackend,
        fork_window: Optional[datetime.timedelta] = DEFAULT_FORK_WINDOW,
        clock: Optional[Callable[[], datetime.datetime]] = None,
        write_timeout: Optional[float] = None,
        export_dir: Optional[Path] = None,
    ):
        """Initialize the store.

        Args:
            backend: Where entities are persisted.
            fork_window: Idle time after which an update forks a new version.
                None disables forking.
            clock: Returns "now"; injectable for tests.
            write_timeout: Seconds to wait for the write lock before failing
                with STORAGE_TIMEOUT. None waits forever.
            export_dir: Default directory for snapshot exports.
        """
        self.backend = backend
        self.versioning = VersioningPolicy(fork_window)
        self.cascade = CascadeManager()
        self._clock = clock or utc_now
        self.write_timeout = write_timeout
        self.export_dir = export_dir
        self._write_lock = threading.RLock()
        self._opened = False

    @classmethod
    def from_config(cls, cfg=None) -> "NoteStore":
        """Build a store (not yet opened) from a :class:`TangleConfig`."""
        from tangle_notes.config import config as default_config
        from tangle_notes.storage.json_backend import JsonFileBackend
        from tangle_notes.storage.sql_backend import SqlBackend

        cfg = cfg or default_config
        if cfg.backend == "json":
            backend = JsonFileBackend(cfg.get_json_path())
        else:
            backend = SqlBackend(cfg.get_db_url())
        return cls(
            backend,
            fork_window=cfg.fork_window,
            write_timeout=cfg.write_timeout,
            export_dir=cfg.get_export_dir(),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def open(self) -> "NoteStore":
        if not self._opened:
            self.backend.open()
            self._opened = True
            logger.info(f"Opened note store ({self.backend.describe()})")
        return self

    def close(self) -> None:
        if self._opened:
            with self._write_lock:
                self.backend.close()
                self._opened = False
            logger.info("Closed note store")

    @property
    def is_open(self) -> bool:
        return self._opened

    def __enter__(self) -> "NoteStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def now(self) -> datetime.datetime:
        return ensure_timezone_aware(self._clock())

    def _check_open(self) -> None:
        if not self._opened:
            raise StorageError("Note store is not open", code=ErrorCode.STORAGE_CLOSED)

    @contextmanager
    def _write_locked(self, operation: str):
        timeout = self.write_timeout if self.write_timeout else -1
        if not self._write_lock.acquire(timeout=timeout):
            raise StorageTimeoutError(operation, self.write_timeout)
        try:
            yield
        finally:
            self._write_lock.release()

    def _execute(
        self,
        operation: str,
        func: Callable[[], Tuple[Any, ChangeSet]],
        failure_value: Any = None,
        **context: Any,
    ) -> OperationResult:
        """Run a mutation under the write lock and convert errors to results."""
        with timed_operation(operation, **context) as op:
            try:
                with self._write_locked(operation):
                    self._check_open()
                    value, changes = func()
                    if not changes.is_empty():
                        self.backend.commit(changes)
                        _tally(op, operation, changes)
            except TangleError as e:
                log = logger.error if isinstance(e, StorageError) else logger.warning
                log(f"{operation} failed ({_describe(context)}): {e}")
                op["failed"] = e.code.name
                return OperationResult.fail(e, value=failure_value)
            except Exception as e:
                # A backend raising something unexpected is still a failed write
                error = StorageError(
                    f"Unexpected error during {operation}",
                    operation=operation,
                    original_error=e,
                )
                logger.exception(f"{operation} failed ({_describe(context)})")
                op["failed"] = error.code.name
                return OperationResult.fail(error, value=failure_value)
            return OperationResult.ok(value, changes)

    def _read(self, operation: str, func: Callable[[], Any]) -> Any:
        self._check_open()
        try:
            return func()
        except StorageError as e:
            logger.error(f"{operation} failed: {e}")
            raise

    # =========================================================================
    # Note mutations
    # =========================================================================

    def create_note(self, data: NoteData = None, parent_id: Optional[str] = None) -> OperationResult:
        """Create a note with defaults for everything not supplied.

        ``data`` may carry a ``parentId`` instead of passing ``parent_id``.
        A parent that does not resolve is stored as given and shows up in
        :meth:`validate` as a missing parent. The result value is the
        created note.
        """
        if isinstance(data, Mapping):
            data = dict(data)
            for key in ("parent_id", "parentId"):
                supplied = data.pop(key, None)
                parent_id = parent_id or supplied

        def run():
            patch = _coerce_patch(data)
            if parent_id is not None and not self.backend.has_note(parent_id):
                logger.warning(f"Creating note with unresolved parent {parent_id}")
            now = self.now()
            note = Note(
                id=generate_id(),
                parent_id=parent_id,
                created_at=now,
                updated_at=now,
                **patch.changes(),
            )
            return note, ChangeSet(notes=[note])

        return self._execute("create_note", run, parent_id=parent_id)

    def update_note(self, note_id: str, patch: NoteData = None) -> OperationResult:
        """Apply ``patch`` through the versioning policy.

        The result value is the note as it now stands, which is a new note
        (with a new id) when the update forked. Unknown ids fail with
        NOTE_NOT_FOUND and a value of None.
        """
        def run():
            parsed = _coerce_patch(patch)
            current = self.backend.get_note(note_id)
            if current is None:
                raise NoteNotFoundError(note_id)
            decision = self.versioning.apply(current, parsed, self.now())
            return decision.note, decision.changes

        return self._execute("update_note", run, note_id=note_id)

    def delete_note(self, note_id: str) -> OperationResult:
        """Delete a note, all its descendant versions, and every connection touching them.

        Value is True on success, False when the note is unknown or the
        write failed; nothing is removed on failure.
        """
        def run():
            changes = self.cascade.plan_delete(
                note_id,
                self.backend.get_all_notes(),
                self.backend.get_all_connections(),
            )
            return True, changes

        return self._execute("delete_note", run, failure_value=False, note_id=note_id)

    # =========================================================================
    # Connection mutations
    # =========================================================================

    def create_connection(
        self,
        source_id: str,
        target_id: str,
        attrs: Optional[Mapping[str, Any]] = None,
    ) -> OperationResult:
        """Connect two distinct existing notes.

        ``attrs`` may set type, label, anchors and line indexes. Fails if
        either note is missing, the ids are equal, or the unordered pair is
        already connected.
        """
        def run():
            if source_id == target_id:
                raise LinkError(
                    "A note cannot be connected to itself",
                    source_id=source_id,
                    target_id=target_id,
                    code=ErrorCode.LINK_SELF_REFERENCE,
                )
            for end in (source_id, target_id):
                if not self.backend.has_note(end):
                    raise NoteNotFoundError(end)

            pair = frozenset((source_id, target_id))
            for existing in self.backend.get_connections_for_note(source_id):
                if existing.endpoints() == pair:
                    raise DuplicateConnectionError(source_id, target_id, existing.id)

            connection = self._build_connection(source_id, target_id, attrs)
            return connection, ChangeSet(connections=[connection])

        return self._execute(
            "create_connection", run, source_id=source_id, target_id=target_id
        )

    def _build_connection(
        self, source_id: str, target_id: str, attrs: Optional[Mapping[str, Any]]
    ) -> Connection:
        fields = {k: v for k, v in dict(attrs or {}).items()
                  if k not in _RESERVED_CONNECTION_KEYS}
        raw_type = fields.get("type")
        if raw_type is not None:
            try:
                ConnectionType(raw_type)
            except ValueError:
                raise ValidationError(
                    f"Unknown connection type '{raw_type}'",
                    field="type",
                    value=raw_type,
                    code=ErrorCode.INVALID_CONNECTION_TYPE,
                )
        try:
            return Connection.model_validate({
                **fields,
                "id": generate_id(),
                "source": source_id,
                "target": target_id,
                "created_at": self.now(),
            })
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid connection attributes: {e.errors()[0].get('msg', e)}",
                code=ErrorCode.LINK_INVALID,
            ) from e

    def delete_connection(self, connection_id: str) -> OperationResult:
        """Delete one connection. Value is True on success, else False."""
        def run():
            if self.backend.get_connection(connection_id) is None:
                raise ConnectionNotFoundError(connection_id)
            return True, ChangeSet(deleted_connection_ids=[connection_id])

        return self._execute(
            "delete_connection", run, failure_value=False, connection_id=connection_id
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def get_note(self, note_id: str) -> Optional[Note]:
        return self._read("get_note", lambda: self.backend.get_note(note_id))

    def get_all_notes(self) -> List[Note]:
        return self._read("get_all_notes", self.backend.get_all_notes)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._read("get_connection", lambda: self.backend.get_connection(connection_id))

    def get_all_connections(self) -> List[Connection]:
        return self._read("get_all_connections", self.backend.get_all_connections)

    def get_connections_for_note(self, note_id: str) -> List[Connection]:
        return self._read(
            "get_connections_for_note",
            lambda: self.backend.get_connections_for_note(note_id),
        )

    def get_connected(self, note_id: str) -> List[Note]:
        """Notes exactly one connection away, in connection creation order."""
        def run():
            connections = self.backend.get_connections_for_note(note_id)
            neighbour_ids: List[str] = []
            for connection in connections:
                other = connection.other_end(note_id)
                if other != note_id and other not in neighbour_ids:
                    neighbour_ids.append(other)
            if not neighbour_ids:
                return []
            by_id = {note.id: note for note in self.backend.get_all_notes()}
            # Orphaned connections point at notes that no longer exist
            return [by_id[i] for i in neighbour_ids if i in by_id]

        return self._read("get_connected", run)

    @traced("search_notes")
    def search_notes(self, query: str = "", is_main: Optional[bool] = None) -> List[Note]:
        """Case-insensitive substring match over title, content and tags.

        An empty query matches every note. Results keep store order.
        """
        needle = (query or "").strip().lower()

        def matches(note: Note) -> bool:
            if is_main is not None and note.is_main != is_main:
                return False
            if not needle:
                return True
            return (
                needle in note.title.lower()
                or needle in note.content.lower()
                or any(needle in tag.lower() for tag in note.tags)
            )

        return [note for note in self.get_all_notes() if matches(note)]

    def get_notes_by_type(self, is_main: bool) -> List[Note]:
        """Main notes (``is_main=True``) or regular notes."""
        return [note for note in self.get_all_notes() if note.is_main == is_main]

    @traced("get_stats")
    def get_stats(self) -> Dict[str, Any]:
        notes = self.get_all_notes()
        connections = self.get_all_connections()
        main_count = sum(1 for note in notes if note.is_main)
        by_type: Dict[str, int] = {}
        for connection in connections:
            by_type[connection.type.value] = by_type.get(connection.type.value, 0) + 1
        last_updated = max((note.updated_at for note in notes), default=None)
        return {
            "backend": self.backend.describe(),
            "totalNotes": len(notes),
            "mainNotes": main_count,
            "regularNotes": len(notes) - main_count,
            "totalConnections": len(connections),
            "connectionsByType": by_type,
            "lastUpdated": last_updated.isoformat() if last_updated else None,
        }

    @traced("validate")
    def validate(self) -> ValidationReport:
        """Diagnose orphaned and duplicate connections. Never repairs."""
        return self.cascade.validate(self.get_all_notes(), self.get_all_connections())

    def get_version_history(self, note_id: str) -> List[Note]:
        """The note followed by each older version it was forked from.

        Returns an empty list for an unknown note. Stops at a missing parent.
        """
        history: List[Note] = []
        seen = set()
        current = self.get_note(note_id)
        while current is not None and current.id not in seen:
            history.append(current)
            seen.add(current.id)
            current = self.get_note(current.parent_id) if current.parent_id else None
        return history

    # =========================================================================
    # Snapshots
    # =========================================================================

    def export_snapshot(self, path: Union[str, Path, None] = None) -> OperationResult:
        """Write every note and connection to a JSON document.

        The value is the path written. Without ``path`` a timestamped file
        in the export directory is used.
        """
        def run():
            target = Path(path) if path else default_export_path(self._export_dir())
            document = build_document(
                self.backend.get_all_notes(), self.backend.get_all_connections()
            )
            written = write_document(target, document)
            logger.info(
                f"Exported {len(document['notes'])} notes and "
                f"{len(document['connections'])} connections to {written}"
            )
            return str(written), ChangeSet()

        return self._execute("export_snapshot", run, path=path)

    def import_snapshot(self, path: Union[str, Path]) -> OperationResult:
        """Replace the whole store with the contents of a snapshot document.

        Ids, fields and relationships are kept as they are in the document.
        The value is a dict of imported counts.
        """
        def run():
            notes, connections = parse_document(read_document(path))
            self.backend.replace_all(notes, connections)
            logger.info(
                f"Imported {len(notes)} notes and {len(connections)} connections from {path}"
            )
            return {"notes": len(notes), "connections": len(connections)}, ChangeSet()

        return self._execute("import_snapshot", run, path=path)

    def _export_dir(self) -> Path:
        if self.export_dir is not None:
            return Path(self.export_dir)
        from tangle_notes.config import config

        return config.get_export_dir()


def _describe(context: Mapping[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in context.items() if v is not None) or "-"


def _tally(op: Dict[str, Any], operation: str, changes: ChangeSet) -> None:
    """Record what a committed change set did, for the store metrics."""
    op["notes_written"] = len(changes.notes)
    op["notes_deleted"] = len(changes.deleted_note_ids)
    op["connections_written"] = len(changes.connections)
    op["connections_deleted"] = len(changes.deleted_connection_ids)
    if operation == "update_note":
        # A fork always carries its update connection
        forked = any(c.type == ConnectionType.UPDATE for c in changes.connections)
        op["forks" if forked else "merges"] = 1
