"""Data models for the Tangle Notes store."""

import datetime
import uuid
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from tangle_notes.exceptions import TangleError


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Any) -> Any:
    """Normalise a timestamp to an aware UTC datetime.

    Naive datetimes (as read back from SQLite) are assumed to be UTC.
    Integers and floats are treated as epoch milliseconds, the format the
    JSON document backend has always written. Other values are returned
    unchanged for pydantic to validate.
    """
    if dt_value is None:
        return utc_now()
    if isinstance(dt_value, (int, float)) and not isinstance(dt_value, bool):
        return datetime.datetime.fromtimestamp(dt_value / 1000, tz=timezone.utc)
    if isinstance(dt_value, str):
        dt_value = datetime.datetime.fromisoformat(dt_value.replace("Z", "+00:00"))
    if isinstance(dt_value, datetime.datetime):
        if dt_value.tzinfo is None:
            return dt_value.replace(tzinfo=timezone.utc)
        return dt_value.astimezone(timezone.utc)
    return dt_value


def generate_id() -> str:
    """Generate an opaque unique identifier for a note or connection."""
    return uuid.uuid4().hex


def _default_width() -> int:
    from tangle_notes.config import config

    return config.default_note_width


def _default_height() -> int:
    from tangle_notes.config import config

    return config.default_note_height


def _rename_legacy_keys(data: Any, renames: Mapping[str, str]) -> Any:
    """Map keys written by older document formats onto current field names."""
    if not isinstance(data, dict):
        return data
    data = dict(data)
    for old, new in renames.items():
        if old in data:
            value = data.pop(old)
            data.setdefault(new, value)
    return data


class ConnectionType(str, Enum):
    """Kinds of connection between notes."""

    DEFAULT = "default"  # Drawn on the canvas without a specific meaning
    MANUAL = "manual"  # Created explicitly from the link panel
    UPDATE = "update"  # Recorded by the versioning policy: newer -> older
    REFERENCE = "reference"  # Line-anchored reference between notes


class Anchor(str, Enum):
    """Side of a note's box a connection is attached to."""

    TOP = "top"
    RIGHT = "right"
    BOTTOM = "bottom"
    LEFT = "left"


class Position(BaseModel):
    """Canvas placement of a note."""

    x: int = 0
    y: int = 0

    model_config = ConfigDict(validate_assignment=True, extra="forbid")


_NOTE_LEGACY_KEYS = {
    "isMainNote": "isMain",
    "is_main_note": "is_main",
}


class Note(BaseModel):
    """A note on the canvas."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    title: str = Field(default="", description="Title of the note")
    content: str = Field(default="", description="Body of the note")
    is_main: bool = Field(default=False, description="Organising hub flag")
    position: Position = Field(default_factory=Position, description="Canvas placement")
    width: int = Field(default_factory=_default_width, ge=1)
    height: int = Field(default_factory=_default_height, ge=1)
    tags: List[str] = Field(default_factory=list, description="Free-form tags")
    parent_id: Optional[str] = Field(
        default=None, description="The note this version was forked from"
    )
    children: List[str] = Field(
        default_factory=list,
        description="Derived: ids of notes whose parent_id is this note",
    )
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last updated (UTC)"
    )

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        data = _rename_legacy_keys(data, _NOTE_LEGACY_KEYS)
        if isinstance(data, dict):
            # Grid variant stores the position as flat x/y columns
            if "x" in data or "y" in data:
                data.setdefault("position", {"x": data.pop("x", 0) or 0, "y": data.pop("y", 0) or 0})
        return data

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate that the ID is a non-empty string."""
        if not v or not v.strip():
            raise ValueError("Note ID cannot be empty")
        return v

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _normalise_timestamps(cls, v: Any) -> Any:
        return ensure_timezone_aware(v)

    def to_document(self) -> Dict[str, Any]:
        """Serialise with the camelCase keys used in the JSON document."""
        return self.model_dump(mode="json", by_alias=True)


class NotePatch(BaseModel):
    """A partial note update.

    Only user-editable fields can be patched: identity, lineage and
    timestamps are owned by the store.
    """

    title: Optional[str] = None
    content: Optional[str] = None
    is_main: Optional[bool] = None
    position: Optional[Position] = None
    width: Optional[int] = Field(default=None, ge=1)
    height: Optional[int] = Field(default=None, ge=1)
    tags: Optional[List[str]] = None

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        data = _rename_legacy_keys(data, _NOTE_LEGACY_KEYS)
        if isinstance(data, dict) and ("x" in data or "y" in data):
            data.setdefault("position", {"x": data.pop("x", 0) or 0, "y": data.pop("y", 0) or 0})
        return data

    @classmethod
    def coerce(cls, value: Union["NotePatch", Mapping[str, Any], None]) -> "NotePatch":
        """Accept a NotePatch, a plain mapping, or None (empty patch)."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls.model_validate(dict(value))

    def changes(self) -> Dict[str, Any]:
        """The fields the caller actually supplied, as plain values."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


_CONNECTION_LEGACY_KEYS = {
    "from": "source",
    "to": "target",
    "sourceNoteId": "source",
    "targetNoteId": "target",
    "source_note_id": "source",
    "target_note_id": "target",
    "sourcePosition": "sourceAnchor",
    "targetPosition": "targetAnchor",
    "source_position": "source_anchor",
    "target_position": "target_anchor",
}


class Connection(BaseModel):
    """A link between two notes."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the connection")
    source: str = Field(..., description="ID of the source note")
    target: str = Field(..., description="ID of the target note")
    type: ConnectionType = Field(default=ConnectionType.DEFAULT, description="Kind of link")
    label: str = Field(default="", description="Optional label shown on the link")
    source_anchor: Optional[Anchor] = None
    target_anchor: Optional[Anchor] = None
    source_line_index: int = Field(default=0, ge=0)
    target_line_index: int = Field(default=0, ge=0)
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the connection was created (UTC)"
    )

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid",
        frozen=True,  # Connections are immutable
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        data = _rename_legacy_keys(data, _CONNECTION_LEGACY_KEYS)
        if isinstance(data, dict):
            for key in ("type", "label"):
                if data.get(key) is None:
                    data.pop(key, None)
        return data

    @field_validator("created_at", mode="before")
    @classmethod
    def _normalise_timestamp(cls, v: Any) -> Any:
        return ensure_timezone_aware(v)

    def endpoints(self) -> FrozenSet[str]:
        """The unordered pair of note ids this connection joins."""
        return frozenset((self.source, self.target))

    def touches(self, note_id: str) -> bool:
        return self.source == note_id or self.target == note_id

    def other_end(self, note_id: str) -> str:
        return self.target if self.source == note_id else self.source

    def to_document(self) -> Dict[str, Any]:
        """Serialise with the camelCase keys used in the JSON document."""
        return self.model_dump(mode="json", by_alias=True)


def attach_children(notes: Iterable[Note]) -> List[Note]:
    """Fill each note's derived ``children`` from the parent_id back-references.

    Children are listed in the order the notes are given.
    """
    notes = list(notes)
    children: Dict[str, List[str]] = {}
    for note in notes:
        if note.parent_id:
            children.setdefault(note.parent_id, []).append(note.id)
    for note in notes:
        note.children = children.get(note.id, [])
    return notes


def serialize(value: Any) -> Any:
    """Convert models (and containers of models) to JSON-ready values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


@dataclass
class ChangeSet:
    """A batch of entity edits committed as one durability unit.

    Deleted note ids are listed in removal order (descendants first).
    """

    notes: List[Note] = field(default_factory=list)
    deleted_note_ids: List[str] = field(default_factory=list)
    connections: List[Connection] = field(default_factory=list)
    deleted_connection_ids: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.notes
            or self.deleted_note_ids
            or self.connections
            or self.deleted_connection_ids
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notes": serialize(self.notes),
            "deletedNoteIds": list(self.deleted_note_ids),
            "connections": serialize(self.connections),
            "deletedConnectionIds": list(self.deleted_connection_ids),
        }


@dataclass
class OperationResult:
    """Outcome of a store mutation: success with a value, or failure with a reason.

    Attributes:
        success: Whether the operation committed.
        value: The canonical entity (or flag) produced by the operation.
        error: The reason for failure, when success is False.
        changes: Everything the operation committed, for reconciling mirrors.
    """

    success: bool
    value: Any = None
    error: Optional[TangleError] = None
    changes: ChangeSet = field(default_factory=ChangeSet)

    @classmethod
    def ok(cls, value: Any = None, changes: Optional[ChangeSet] = None) -> "OperationResult":
        return cls(success=True, value=value, changes=changes or ChangeSet())

    @classmethod
    def fail(cls, error: TangleError, value: Any = None) -> "OperationResult":
        return cls(success=False, value=value, error=error)

    def to_dict(self, value_key: str = "value") -> Dict[str, Any]:
        """Convert to the response shape used at the request/response boundary."""
        result: Dict[str, Any] = {"success": self.success}
        if self.success:
            result[value_key] = serialize(self.value)
        else:
            result["error"] = self.error.to_dict() if self.error else None
        return result
