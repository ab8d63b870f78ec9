"""Client-side optimistic mirror of the entity store."""

from tangle_notes.client.mirror import ClientMirror, MirrorState

__all__ = ["ClientMirror", "MirrorState"]
