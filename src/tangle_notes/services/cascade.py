"""Referential integrity for note deletion, plus a diagnostic validation pass."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from tangle_notes.exceptions import NoteNotFoundError
from tangle_notes.models.schema import ChangeSet, Connection, Note

logger = logging.getLogger(__name__)

ORPHANED_CONNECTION = "orphaned_connection"
DUPLICATE_CONNECTION = "duplicate_connection"
MISSING_PARENT = "missing_parent"


@dataclass
class ValidationIssue:
    """One problem found by :meth:`CascadeManager.validate`."""

    type: str
    message: str
    connection_id: Optional[str] = None
    note_id: Optional[str] = None
    related_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"type": self.type, "message": self.message}
        if self.connection_id:
            result["connectionId"] = self.connection_id
        if self.note_id:
            result["noteId"] = self.note_id
        if self.related_id:
            result["relatedId"] = self.related_id
        return result


@dataclass
class ValidationReport:
    issues: List[ValidationIssue] = field(default_factory=list)
    notes_checked: int = 0
    connections_checked: int = 0

    @property
    def is_valid(self) -> bool:
        return not self.issues

    def of_type(self, issue_type: str) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.type == issue_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "notesChecked": self.notes_checked,
            "connectionsChecked": self.connections_checked,
            "issues": [issue.to_dict() for issue in self.issues],
        }


class CascadeManager:
    """Plans deletions; never mutates anything itself."""

    def plan_delete(
        self,
        root_id: str,
        notes: Iterable[Note],
        connections: Iterable[Connection],
    ) -> ChangeSet:
        """Collect everything deleting ``root_id`` must remove.

        Descendants are found through the parent_id back-references and
        listed post-order: every note comes after all of its descendants,
        and the root comes last. Every connection touching any removed note
        is included. Cycles in corrupt data are tolerated.

        Raises:
            NoteNotFoundError: If ``root_id`` is not a known note.
        """
        arena = {note.id: note for note in notes}
        if root_id not in arena:
            raise NoteNotFoundError(root_id)

        children: Dict[str, List[str]] = {}
        for note in arena.values():
            if note.parent_id and note.parent_id in arena:
                children.setdefault(note.parent_id, []).append(note.id)

        removal_order: List[str] = []
        visited = {root_id}
        stack = [(root_id, iter(children.get(root_id, [])))]
        while stack:
            note_id, pending = stack[-1]
            child_id = next(pending, None)
            if child_id is None:
                stack.pop()
                removal_order.append(note_id)
            elif child_id not in visited:
                visited.add(child_id)
                stack.append((child_id, iter(children.get(child_id, []))))

        removed = set(removal_order)
        doomed_connections = [
            c.id for c in connections
            if c.source in removed or c.target in removed
        ]
        logger.debug(
            f"Delete plan for {root_id}: {len(removal_order)} notes, "
            f"{len(doomed_connections)} connections"
        )
        return ChangeSet(
            deleted_note_ids=removal_order,
            deleted_connection_ids=doomed_connections,
        )

    def validate(self, notes: Iterable[Note], connections: Iterable[Connection]) -> ValidationReport:
        """Report orphaned and duplicate connections and dangling parents.

        Diagnostic only: nothing is repaired.
        """
        notes = list(notes)
        connections = list(connections)
        note_ids = {note.id for note in notes}
        report = ValidationReport(notes_checked=len(notes), connections_checked=len(connections))

        seen_pairs: Dict[frozenset, str] = {}
        for connection in connections:
            missing = [end for end in (connection.source, connection.target) if end not in note_ids]
            if missing:
                report.issues.append(ValidationIssue(
                    type=ORPHANED_CONNECTION,
                    message=f"Connection {connection.id} references missing note(s): "
                            f"{', '.join(missing)}",
                    connection_id=connection.id,
                    note_id=missing[0],
                ))

            pair = connection.endpoints()
            if pair in seen_pairs:
                report.issues.append(ValidationIssue(
                    type=DUPLICATE_CONNECTION,
                    message=f"Connection {connection.id} duplicates {seen_pairs[pair]}",
                    connection_id=connection.id,
                    related_id=seen_pairs[pair],
                ))
            else:
                seen_pairs[pair] = connection.id

        for note in notes:
            if note.parent_id and note.parent_id not in note_ids:
                report.issues.append(ValidationIssue(
                    type=MISSING_PARENT,
                    message=f"Note {note.id} has missing parent {note.parent_id}",
                    note_id=note.id,
                    related_id=note.parent_id,
                ))

        if report.issues:
            logger.warning(f"Validation found {len(report.issues)} issue(s)")
        return report
