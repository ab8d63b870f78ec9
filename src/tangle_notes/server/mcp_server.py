"""MCP server exposing the note store as request/response tools."""

import atexit
import json
import logging
import uuid
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

from tangle_notes.config import config
from tangle_notes.exceptions import TangleError
from tangle_notes.models.schema import OperationResult, serialize
from tangle_notes.observability import metrics, timed_operation
from tangle_notes.services.hierarchy import build_hierarchy
from tangle_notes.services.note_store import NoteStore

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1_000_000  # 1 MB


def _validate_input_lengths(
    title: Optional[str] = None, content: Optional[str] = None
) -> None:
    """Validate input string lengths at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValueError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters"
        )
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValueError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
        )


def _split_tags(tags: Optional[str]):
    if tags is None:
        return None
    return [t.strip() for t in tags.split(",") if t.strip()]


def _note_fields(
    title: Optional[str] = None,
    content: Optional[str] = None,
    is_main: Optional[bool] = None,
    x: Optional[int] = None,
    y: Optional[int] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    tags: Optional[str] = None,
    current_position: Optional[Dict[str, int]] = None,
) -> Dict[str, Any]:
    """Collect the note fields a tool call actually supplied."""
    fields: Dict[str, Any] = {}
    for key, value in (("title", title), ("content", content), ("is_main", is_main),
                       ("width", width), ("height", height), ("tags", _split_tags(tags))):
        if value is not None:
            fields[key] = value
    if x is not None or y is not None:
        base = current_position or {"x": 0, "y": 0}
        fields["position"] = {
            "x": x if x is not None else base["x"],
            "y": y if y is not None else base["y"],
        }
    return fields


def _dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


class TangleMcpServer:
    """MCP server for the Tangle notes store."""

    def __init__(self, store: Optional[NoteStore] = None):
        """Initialize the MCP server.

        Args:
            store: An opened store to serve. When None, one is built from the
                process configuration and opened here.
        """
        self.mcp = FastMCP(config.server_name)
        self.store = store if store is not None else NoteStore.from_config()
        self.initialize()
        # Register shutdown hook for resource cleanup
        atexit.register(self._shutdown)
        self._register_tools()

    def initialize(self) -> None:
        """Open the store."""
        self.store.open()
        logger.info("Tangle MCP server initialized")

    def _shutdown(self) -> None:
        """Clean up resources on server exit."""
        self.store.close()

    def format_error_response(self, error: Exception) -> str:
        """Format an unexpected tool error as a JSON failure.

        Domain errors keep their code and message; anything else is logged
        in full and reported with only a reference id.
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, TangleError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            body = error.to_dict()
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            body = {"error": "ValidationError", "message": f"Invalid input (ref: {error_id})"}
        elif isinstance(error, (IOError, OSError)):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            body = {"error": "StorageError",
                    "message": f"A file system error occurred (ref: {error_id})"}
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            body = {"error": "InternalError",
                    "message": f"An unexpected error occurred (ref: {error_id})"}
        return _dumps({"success": False, "error": body})

    def _result(self, result: OperationResult, op: Dict[str, Any], value_key: str) -> str:
        if not result.success:
            op["failed"] = result.error.code.name if result.error else "failed"
        return _dumps(result.to_dict(value_key=value_key))

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="tangle_get_all_notes")
        def tangle_get_all_notes() -> str:
            """List every note on the canvas."""
            with timed_operation("tangle_get_all_notes") as op:
                try:
                    notes = self.store.get_all_notes()
                    op["count"] = len(notes)
                    return _dumps({"success": True, "notes": serialize(notes)})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_get_all_connections")
        def tangle_get_all_connections() -> str:
            """List every connection between notes."""
            with timed_operation("tangle_get_all_connections") as op:
                try:
                    connections = self.store.get_all_connections()
                    op["count"] = len(connections)
                    return _dumps({"success": True, "connections": serialize(connections)})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_get_note")
        def tangle_get_note(note_id: str) -> str:
            """Retrieve a note by ID.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("tangle_get_note", note_id=note_id) as op:
                try:
                    note = self.store.get_note(note_id)
                    op["found"] = note is not None
                    return _dumps({"success": True, "note": serialize(note)})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_create_note")
        def tangle_create_note(
            title: str = "",
            content: str = "",
            is_main: bool = False,
            x: Optional[int] = None,
            y: Optional[int] = None,
            width: Optional[int] = None,
            height: Optional[int] = None,
            tags: Optional[str] = None,
            parent_id: Optional[str] = None,
        ) -> str:
            """Create a note.
            Args:
                title: Title of the note
                content: Body of the note
                is_main: Mark the note as a main (hub) note
                x: Canvas x position
                y: Canvas y position
                width: Box width (defaults from configuration)
                height: Box height (defaults from configuration)
                tags: Comma-separated list of tags (optional)
                parent_id: Note this one descends from (optional)
            """
            with timed_operation("tangle_create_note", title=title[:30]) as op:
                try:
                    _validate_input_lengths(title=title, content=content)
                    fields = _note_fields(title, content, is_main, x, y, width, height, tags)
                    result = self.store.create_note(fields, parent_id=parent_id)
                    if result.success:
                        op["note_id"] = result.value.id
                    return self._result(result, op, "note")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_update_note")
        def tangle_update_note(
            note_id: str,
            title: Optional[str] = None,
            content: Optional[str] = None,
            is_main: Optional[bool] = None,
            x: Optional[int] = None,
            y: Optional[int] = None,
            width: Optional[int] = None,
            height: Optional[int] = None,
            tags: Optional[str] = None,
        ) -> str:
            """Update a note. A note idle for longer than the fork window is not
            overwritten: the update becomes a new version linked to it.
            Args:
                note_id: The ID of the note to update
                title: New title (optional)
                content: New content (optional)
                is_main: New main-note flag (optional)
                x: New x position (optional)
                y: New y position (optional)
                width: New width (optional)
                height: New height (optional)
                tags: New comma-separated list of tags (optional)
            """
            with timed_operation("tangle_update_note", note_id=note_id) as op:
                try:
                    _validate_input_lengths(title=title, content=content)
                    current_position = None
                    if x is None or y is None:
                        current = self.store.get_note(note_id)
                        if current is not None:
                            current_position = current.position.model_dump()
                    fields = _note_fields(title, content, is_main, x, y, width, height, tags,
                                          current_position=current_position)
                    result = self.store.update_note(note_id, fields)
                    if result.success:
                        op["note_id"] = result.value.id
                        op["forked"] = result.value.id != note_id
                    return self._result(result, op, "note")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_delete_note")
        def tangle_delete_note(note_id: str) -> str:
            """Delete a note, its descendant versions and all their connections.
            Args:
                note_id: The ID of the note to delete
            """
            with timed_operation("tangle_delete_note", note_id=note_id) as op:
                try:
                    result = self.store.delete_note(note_id)
                    if result.success:
                        op["removed"] = len(result.changes.deleted_note_ids)
                    return self._result(result, op, "deleted")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_create_connection")
        def tangle_create_connection(
            source_id: str,
            target_id: str,
            type: str = "default",
            label: str = "",
            source_anchor: Optional[str] = None,
            target_anchor: Optional[str] = None,
        ) -> str:
            """Connect two notes.
            Args:
                source_id: ID of the source note
                target_id: ID of the target note
                type: Connection type (default, manual, update, reference)
                label: Optional label shown on the connection
                source_anchor: Side of the source box (top, right, bottom, left)
                target_anchor: Side of the target box (top, right, bottom, left)
            """
            with timed_operation(
                "tangle_create_connection", source_id=source_id, target_id=target_id
            ) as op:
                try:
                    attrs: Dict[str, Any] = {"type": type.lower(), "label": label}
                    if source_anchor:
                        attrs["source_anchor"] = source_anchor.lower()
                    if target_anchor:
                        attrs["target_anchor"] = target_anchor.lower()
                    result = self.store.create_connection(source_id, target_id, attrs)
                    if result.success:
                        op["connection_id"] = result.value.id
                    return self._result(result, op, "connection")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_delete_connection")
        def tangle_delete_connection(connection_id: str) -> str:
            """Delete a connection.
            Args:
                connection_id: The ID of the connection to delete
            """
            with timed_operation("tangle_delete_connection", connection_id=connection_id) as op:
                try:
                    result = self.store.delete_connection(connection_id)
                    return self._result(result, op, "deleted")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_get_connected")
        def tangle_get_connected(note_id: str) -> str:
            """List notes exactly one connection away from a note.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("tangle_get_connected", note_id=note_id) as op:
                try:
                    notes = self.store.get_connected(note_id)
                    op["count"] = len(notes)
                    return _dumps({"success": True, "notes": serialize(notes)})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_search_notes")
        def tangle_search_notes(query: str = "", note_kind: str = "all") -> str:
            """Search notes by title, content and tags (case-insensitive, unranked).
            Args:
                query: Text to look for; empty matches everything
                note_kind: "all", "main" or "regular"
            """
            with timed_operation("tangle_search_notes", query=query[:30]) as op:
                try:
                    kinds = {"all": None, "main": True, "regular": False}
                    if note_kind.lower() not in kinds:
                        raise ValueError(f"Invalid note_kind: {note_kind}")
                    notes = self.store.search_notes(query, is_main=kinds[note_kind.lower()])
                    op["count"] = len(notes)
                    return _dumps({"success": True, "notes": serialize(notes)})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_hierarchy")
        def tangle_hierarchy(sort_by: str = "title") -> str:
            """Group regular notes under the main notes they connect to.
            Args:
                sort_by: "title" (A-Z), "created" or "updated" (newest first)
            """
            with timed_operation("tangle_hierarchy", sort_by=sort_by) as op:
                try:
                    hierarchy = build_hierarchy(
                        self.store.get_all_notes(),
                        self.store.get_all_connections(),
                        sort_by=sort_by,
                    )
                    op["groups"] = len(hierarchy.main_notes)
                    return _dumps({"success": True, "hierarchy": hierarchy.to_dict()})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_version_history")
        def tangle_version_history(note_id: str) -> str:
            """Show a note followed by the older versions it was forked from.
            Args:
                note_id: The ID of the newest version
            """
            with timed_operation("tangle_version_history", note_id=note_id) as op:
                try:
                    history = self.store.get_version_history(note_id)
                    op["versions"] = len(history)
                    return _dumps({"success": True, "versions": serialize(history)})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_export_snapshot")
        def tangle_export_snapshot(path: Optional[str] = None) -> str:
            """Export every note and connection to a JSON file.
            Args:
                path: Destination file (optional; defaults to the export directory)
            """
            with timed_operation("tangle_export_snapshot") as op:
                try:
                    result = self.store.export_snapshot(path)
                    return self._result(result, op, "path")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_validate")
        def tangle_validate() -> str:
            """Report orphaned and duplicate connections. Nothing is repaired."""
            with timed_operation("tangle_validate") as op:
                try:
                    report = self.store.validate()
                    op["issues"] = len(report.issues)
                    return _dumps({"success": True, "report": report.to_dict()})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="tangle_status")
        def tangle_status() -> str:
            """Store statistics and server metrics."""
            with timed_operation("tangle_status"):
                try:
                    return _dumps({
                        "success": True,
                        "stats": self.store.get_stats(),
                        "metrics": metrics.get_summary(),
                    })
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
