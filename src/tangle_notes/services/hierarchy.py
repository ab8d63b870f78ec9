"""Hierarchy view: main notes with the regular notes connected to them."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from tangle_notes.exceptions import ErrorCode, NoteNotFoundError, ValidationError
from tangle_notes.models.schema import Connection, Note, OperationResult, serialize

logger = logging.getLogger(__name__)

SORT_KEYS = ("title", "created", "updated")


@dataclass
class HierarchyGroup:
    main_note: Note
    children: List[Note] = field(default_factory=list)

    @property
    def child_count(self) -> int:
        return len(self.children)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mainNote": serialize(self.main_note),
            "children": serialize(self.children),
            "childCount": self.child_count,
        }


@dataclass
class Hierarchy:
    main_notes: List[HierarchyGroup] = field(default_factory=list)
    orphan_notes: List[Note] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mainNotes": [group.to_dict() for group in self.main_notes],
            "orphanNotes": serialize(self.orphan_notes),
        }


def _check_sort_key(sort_by: str) -> None:
    if sort_by not in SORT_KEYS:
        raise ValidationError(
            f"sort_by must be one of {', '.join(SORT_KEYS)}",
            field="sort_by",
            value=sort_by,
            code=ErrorCode.INVALID_SORT_KEY,
        )


def sort_notes(notes: Iterable[Note], sort_by: str = "title") -> List[Note]:
    """Sort by title (A-Z, case-insensitive) or by created/updated (newest first)."""
    _check_sort_key(sort_by)
    if sort_by == "title":
        return sorted(notes, key=lambda n: (n.title or "Untitled").casefold())
    if sort_by == "created":
        return sorted(notes, key=lambda n: n.created_at, reverse=True)
    return sorted(notes, key=lambda n: n.updated_at, reverse=True)


def build_hierarchy(
    notes: Iterable[Note],
    connections: Iterable[Connection],
    sort_by: str = "title",
) -> Hierarchy:
    """Group regular notes under the main notes they are connected to.

    A regular note connected to several main notes appears under each of
    them. Regular notes with no connection to any main note are orphans.
    Connections between two main notes don't nest them.
    """
    _check_sort_key(sort_by)
    notes = list(notes)
    by_id = {note.id: note for note in notes}
    main_ids = {note.id for note in notes if note.is_main}

    grouped: Dict[str, List[str]] = {main_id: [] for main_id in main_ids}
    attached = set()
    for connection in connections:
        for main_end, other_end in ((connection.source, connection.target),
                                    (connection.target, connection.source)):
            if main_end not in main_ids or other_end in main_ids:
                continue
            if other_end not in by_id:
                continue
            if other_end not in grouped[main_end]:
                grouped[main_end].append(other_end)
            attached.add(other_end)

    groups = [
        HierarchyGroup(
            main_note=main,
            children=sort_notes((by_id[i] for i in grouped[main.id]), sort_by),
        )
        for main in sort_notes((by_id[i] for i in main_ids), sort_by)
    ]
    orphans = sort_notes(
        (note for note in notes if not note.is_main and note.id not in attached),
        sort_by,
    )
    return Hierarchy(main_notes=groups, orphan_notes=orphans)


def toggle_main(store, note_id: str) -> OperationResult:
    """Flip a note's main-note flag through the store's normal update path."""
    note = store.get_note(note_id)
    if note is None:
        error = NoteNotFoundError(note_id)
        logger.warning(f"toggle_main failed (note_id={note_id}): {error}")
        return OperationResult.fail(error)
    return store.update_note(note_id, {"is_main": not note.is_main})
