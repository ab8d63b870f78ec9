# tests/test_mcp_server.py
"""Tests for the MCP server tools."""
import json
from unittest.mock import MagicMock, patch

import pytest

from tangle_notes.exceptions import NoteNotFoundError
from tangle_notes.server.mcp_server import TangleMcpServer


class TestMcpServer:
    """Tool tests against a real JSON-backed store with FastMCP mocked out."""

    @pytest.fixture(autouse=True)
    def server(self, json_store):
        # Capture the tool decorator functions when registering
        self.registered_tools = {}
        self.mock_mcp = MagicMock()

        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper
        self.mock_mcp.tool = mock_tool_decorator

        self.store = json_store
        with patch("tangle_notes.server.mcp_server.FastMCP", return_value=self.mock_mcp), \
                patch("tangle_notes.server.mcp_server.atexit"):
            self.server = TangleMcpServer(store=json_store)
        yield self.server

    def call(self, name, **kwargs):
        return json.loads(self.registered_tools[name](**kwargs))

    def test_all_tools_registered(self):
        assert set(self.registered_tools) == {
            "tangle_get_all_notes", "tangle_get_all_connections", "tangle_get_note",
            "tangle_create_note", "tangle_update_note", "tangle_delete_note",
            "tangle_create_connection", "tangle_delete_connection", "tangle_get_connected",
            "tangle_search_notes", "tangle_hierarchy", "tangle_version_history",
            "tangle_export_snapshot", "tangle_validate", "tangle_status",
        }

    def test_create_and_get_note(self):
        created = self.call("tangle_create_note", title="Alpha", content="body",
                            x=10, y=20, tags="a, b")
        assert created["success"] is True
        note = created["note"]
        assert note["title"] == "Alpha"
        assert note["position"] == {"x": 10, "y": 20}
        assert note["tags"] == ["a", "b"]

        fetched = self.call("tangle_get_note", note_id=note["id"])
        assert fetched["note"]["id"] == note["id"]
        assert self.call("tangle_get_note", note_id="missing")["note"] is None

    def test_update_keeps_unspecified_coordinate(self):
        note = self.call("tangle_create_note", x=5, y=6)["note"]
        updated = self.call("tangle_update_note", note_id=note["id"], x=50)
        assert updated["note"]["position"] == {"x": 50, "y": 6}

    def test_update_unknown_note(self):
        result = self.call("tangle_update_note", note_id="missing", title="x")
        assert result["success"] is False
        assert result["error"]["code_name"] == "NOTE_NOT_FOUND"

    def test_title_length_limit(self):
        result = self.call("tangle_create_note", title="x" * 501)
        assert result["success"] is False
        assert "ref:" in result["error"]["message"]

    def test_connections_and_duplicates(self):
        a = self.call("tangle_create_note", title="a")["note"]
        b = self.call("tangle_create_note", title="b")["note"]
        first = self.call("tangle_create_connection", source_id=a["id"], target_id=b["id"],
                          type="Reference", source_anchor="RIGHT")
        assert first["connection"]["type"] == "reference"
        assert first["connection"]["sourceAnchor"] == "right"

        dup = self.call("tangle_create_connection", source_id=b["id"], target_id=a["id"])
        assert dup["error"]["code_name"] == "DUPLICATE_CONNECTION"

        connected = self.call("tangle_get_connected", note_id=a["id"])
        assert [n["id"] for n in connected["notes"]] == [b["id"]]

        deleted = self.call("tangle_delete_connection", connection_id=first["connection"]["id"])
        assert deleted == {"success": True, "deleted": True}
        assert self.call("tangle_get_all_connections")["connections"] == []

    def test_delete_note(self):
        note = self.call("tangle_create_note")["note"]
        assert self.call("tangle_delete_note", note_id=note["id"])["deleted"] is True
        missing = self.call("tangle_delete_note", note_id=note["id"])
        assert missing["success"] is False
        assert self.call("tangle_get_all_notes")["notes"] == []

    def test_search_and_hierarchy(self):
        hub = self.call("tangle_create_note", title="Hub", is_main=True)["note"]
        leaf = self.call("tangle_create_note", title="Leaf")["note"]
        self.call("tangle_create_connection", source_id=hub["id"], target_id=leaf["id"])

        found = self.call("tangle_search_notes", query="hub", note_kind="main")
        assert [n["id"] for n in found["notes"]] == [hub["id"]]
        bad_kind = self.call("tangle_search_notes", note_kind="weird")
        assert bad_kind["success"] is False

        hierarchy = self.call("tangle_hierarchy")["hierarchy"]
        assert hierarchy["mainNotes"][0]["children"][0]["id"] == leaf["id"]
        invalid = self.call("tangle_hierarchy", sort_by="size")
        assert invalid["error"]["code_name"] == "INVALID_SORT_KEY"

    def test_version_history(self):
        note = self.call("tangle_create_note", title="v0")["note"]
        history = self.call("tangle_version_history", note_id=note["id"])
        assert [v["id"] for v in history["versions"]] == [note["id"]]

    def test_export_validate_status(self, temp_dirs):
        _, export_dir = temp_dirs
        self.call("tangle_create_note", title="a")
        exported = self.call("tangle_export_snapshot", path=str(export_dir / "out.json"))
        assert exported["success"] is True
        assert json.loads((export_dir / "out.json").read_text())["notes"]

        assert self.call("tangle_validate")["report"]["isValid"] is True

        status = self.call("tangle_status")
        assert status["stats"]["totalNotes"] == 1
        assert status["metrics"]["total_operations"] >= 1

    def test_format_error_response(self):
        domain = json.loads(self.server.format_error_response(NoteNotFoundError("n1")))
        assert domain["error"]["code_name"] == "NOTE_NOT_FOUND"
        unexpected = json.loads(self.server.format_error_response(RuntimeError("secret")))
        assert "secret" not in unexpected["error"]["message"]
        assert "ref:" in unexpected["error"]["message"]

    def test_store_error_is_reported(self):
        self.store.close()
        result = self.call("tangle_get_all_notes")
        assert result["success"] is False
        assert result["error"]["code_name"] == "STORAGE_CLOSED"
