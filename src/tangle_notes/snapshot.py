"""Snapshot documents: the JSON layout shared by export, import and the file backend.

A document looks like::

    {
      "notes": {"<id>": {...note...}},
      "connections": {"<id>": {...connection...}},
      "lastModified": 1718000000000
    }

Keys inside notes and connections are camelCase. Older documents that use
``isMainNote`` or ``from``/``to`` are accepted when reading.
"""
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from tangle_notes.exceptions import ErrorCode, StorageError, ValidationError
from tangle_notes.models.schema import Connection, Note, attach_children

logger = logging.getLogger(__name__)

DEFAULT_EXPORT_NAME = "tangle-notes.json"


def _epoch_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def empty_document() -> Dict[str, Any]:
    return {"notes": {}, "connections": {}, "lastModified": _epoch_ms()}


def build_document(notes: Iterable[Note], connections: Iterable[Connection]) -> Dict[str, Any]:
    """Build a snapshot document. ``children`` is written out derived."""
    notes = attach_children(n.model_copy(deep=True) for n in notes)
    return {
        "notes": {note.id: note.to_document() for note in notes},
        "connections": {conn.id: conn.to_document() for conn in connections},
        "lastModified": _epoch_ms(),
    }


def parse_document(data: Any) -> Tuple[List[Note], List[Connection]]:
    """Parse a snapshot document into models.

    Stored ``children`` lists are ignored; they are always re-derived from
    parent_id. Raises ValidationError if the document is malformed.
    """
    if not isinstance(data, dict):
        raise ValidationError("Snapshot document must be a JSON object")

    raw_notes = data.get("notes", {})
    raw_connections = data.get("connections", {})
    # Some exports stored lists instead of id-keyed maps
    if isinstance(raw_notes, dict):
        raw_notes = list(raw_notes.values())
    if isinstance(raw_connections, dict):
        raw_connections = list(raw_connections.values())

    try:
        notes = []
        for raw in raw_notes:
            raw = dict(raw)
            raw.pop("children", None)
            notes.append(Note.model_validate(raw))
        connections = [Connection.model_validate(raw) for raw in raw_connections]
    except (PydanticValidationError, TypeError, ValueError) as e:
        raise ValidationError(
            f"Invalid snapshot document: {e}",
            code=ErrorCode.VALIDATION_FAILED,
        ) from e

    return attach_children(notes), connections


def write_document(path: Union[str, Path], document: Dict[str, Any]) -> Path:
    """Write a document atomically (temp file + rename).

    The previous file, if any, is left intact when the write fails.
    """
    path = Path(path)
    temp_file = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_file, path)
    except (OSError, TypeError, ValueError) as e:
        try:
            temp_file.unlink()
        except OSError:
            pass
        raise StorageError(
            f"Failed to write document {path.name}",
            operation="write",
            path=str(path),
            code=ErrorCode.STORAGE_WRITE_FAILED,
            original_error=e,
        ) from e
    return path


def read_document(path: Union[str, Path]) -> Dict[str, Any]:
    """Read and decode a document from disk."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(
            f"Failed to read document {path.name}",
            operation="read",
            path=str(path),
            code=ErrorCode.STORAGE_READ_FAILED,
            original_error=e,
        ) from e


def default_export_path(export_dir: Path) -> Path:
    """A timestamped export path inside ``export_dir``."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    stem, suffix = os.path.splitext(DEFAULT_EXPORT_NAME)
    return export_dir / f"{stem}-{stamp}{suffix}"
