"""Versioning policy: overwrite a note in place, or fork a new version of it."""
import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from tangle_notes.models.schema import (ChangeSet, Connection, ConnectionType, Note,
                                        NotePatch, generate_id)

logger = logging.getLogger(__name__)

DEFAULT_FORK_WINDOW = datetime.timedelta(hours=1)


@dataclass
class VersioningDecision:
    """What an update turned into.

    Attributes:
        note: The note to return to the caller (the fork, when one was made).
        changes: Everything that must be committed for this update.
        forked: Whether a new version was created.
        connection: The ``update`` connection recorded by a fork.
    """

    note: Note
    changes: ChangeSet
    forked: bool = False
    connection: Optional[Connection] = None


def merge_patch(note: Note, patch: NotePatch, now: datetime.datetime) -> Note:
    """Shallow-merge ``patch`` into a copy of ``note`` and refresh ``updated_at``."""
    merged = note.model_copy(deep=True)
    for field_name, value in patch.changes().items():
        setattr(merged, field_name, value)
    merged.updated_at = now
    return merged


class VersioningPolicy:
    """Decides, per update, whether to merge or to fork.

    A note whose last update is strictly older than ``fork_window`` is not
    modified: the patch becomes a brand new note whose ``parent_id`` points at
    the original, plus an ``update`` connection from the new note to the old
    one. The decision depends only on elapsed time, never on the patch
    contents, so an empty patch can fork too.

    ``fork_window=None`` disables forking.
    """

    def __init__(self, fork_window: Optional[datetime.timedelta] = DEFAULT_FORK_WINDOW):
        if fork_window is not None and fork_window <= datetime.timedelta(0):
            fork_window = None
        self.fork_window = fork_window

    def should_fork(self, note: Note, now: datetime.datetime) -> bool:
        if self.fork_window is None:
            return False
        return (now - note.updated_at) > self.fork_window

    def apply(self, current: Note, patch: NotePatch, now: datetime.datetime) -> VersioningDecision:
        """Work out the result of applying ``patch`` to ``current`` at ``now``."""
        if self.should_fork(current, now):
            return self.fork(current, patch, now)
        return self.merge(current, patch, now)

    def merge(self, current: Note, patch: NotePatch, now: datetime.datetime) -> VersioningDecision:
        updated = merge_patch(current, patch, now)
        return VersioningDecision(note=updated, changes=ChangeSet(notes=[updated]))

    def fork(self, current: Note, patch: NotePatch, now: datetime.datetime) -> VersioningDecision:
        # The patch is the complete new content; nothing is carried over
        forked = Note(
            id=generate_id(),
            parent_id=current.id,
            created_at=now,
            updated_at=now,
            **patch.changes(),
        )
        link = Connection(
            source=forked.id,
            target=current.id,
            type=ConnectionType.UPDATE,
            created_at=now,
        )
        logger.info(
            f"Forked note {current.id} -> {forked.id} "
            f"(last updated {now - current.updated_at} ago)"
        )
        return VersioningDecision(
            note=forked,
            changes=ChangeSet(notes=[forked], connections=[link]),
            forked=True,
            connection=link,
        )
