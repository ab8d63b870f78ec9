"""Backend-specific storage tests: document layout, corruption, migrations, rollback."""
import json

import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from tangle_notes.exceptions import ErrorCode, StorageError
from tangle_notes.models.db_models import init_db
from tangle_notes.models.schema import ChangeSet, Connection, Note
from tangle_notes.storage import json_backend as json_backend_module
from tangle_notes.storage import sql_backend as sql_backend_module
from tangle_notes.storage.json_backend import JsonFileBackend
from tangle_notes.storage.sql_backend import SqlBackend


@pytest.fixture
def json_path(temp_dirs):
    data_dir, _ = temp_dirs
    return data_dir / "notes.json"


class TestJsonFileBackend:
    def test_open_creates_empty_document(self, json_path):
        backend = JsonFileBackend(json_path)
        backend.open()
        document = json.loads(json_path.read_text())
        assert document["notes"] == {}
        assert document["connections"] == {}
        assert isinstance(document["lastModified"], int)

    def test_document_layout(self, json_path):
        backend = JsonFileBackend(json_path)
        backend.open()
        parent = Note(id="p", title="Parent", is_main=True)
        child = Note(id="c", parent_id="p")
        backend.commit(ChangeSet(notes=[parent, child],
                                 connections=[Connection(id="l1", source="c", target="p")]))
        document = json.loads(json_path.read_text())
        assert set(document["notes"]) == {"p", "c"}
        assert document["notes"]["p"]["isMain"] is True
        assert document["notes"]["p"]["children"] == ["c"]
        assert document["notes"]["c"]["parentId"] == "p"
        assert document["connections"]["l1"]["source"] == "c"

    def test_reload_from_disk(self, json_path):
        first = JsonFileBackend(json_path)
        first.open()
        first.commit(ChangeSet(notes=[Note(id="a", title="A")]))
        first.close()
        second = JsonFileBackend(json_path)
        second.open()
        assert second.get_note("a").title == "A"

    def test_stored_children_are_ignored(self, json_path):
        json_path.write_text(json.dumps({
            "notes": {
                "a": {"id": "a", "children": ["ghost"]},
                "b": {"id": "b", "parentId": "a"},
            },
            "connections": {},
            "lastModified": 0,
        }))
        backend = JsonFileBackend(json_path)
        backend.open()
        assert backend.get_note("a").children == ["b"]

    def test_legacy_document(self, json_path):
        json_path.write_text(json.dumps({
            "notes": {
                "n1": {"id": "n1", "title": "Hub", "content": "", "isMainNote": True,
                       "position": {"x": 1, "y": 2}, "createdAt": 1704110400000,
                       "updatedAt": 1704110400000},
                "n2": {"id": "n2", "title": "Leaf", "content": "", "isMainNote": False,
                       "position": {"x": 0, "y": 0}, "createdAt": 1704110400000,
                       "updatedAt": 1704110400000},
            },
            "connections": {
                "c1": {"id": "c1", "from": "n1", "to": "n2", "type": "default",
                       "createdAt": 1704110400000},
            },
            "lastModified": 1704110400000,
        }))
        backend = JsonFileBackend(json_path)
        backend.open()
        assert backend.get_note("n1").is_main is True
        connection = backend.get_connection("c1")
        assert (connection.source, connection.target) == ("n1", "n2")

    def test_corrupt_document(self, json_path):
        json_path.write_text("{not json")
        with pytest.raises(StorageError) as excinfo:
            JsonFileBackend(json_path).open()
        assert excinfo.value.code == ErrorCode.STORAGE_READ_FAILED

    def test_invalid_document_shape(self, json_path):
        json_path.write_text(json.dumps({"notes": {"a": {"id": "a", "width": -1}}}))
        with pytest.raises(StorageError) as excinfo:
            JsonFileBackend(json_path).open()
        assert excinfo.value.code == ErrorCode.STORAGE_READ_FAILED

    def test_non_mapping_entries(self, json_path):
        json_path.write_text(json.dumps({"notes": ["ab"], "connections": []}))
        with pytest.raises(StorageError) as excinfo:
            JsonFileBackend(json_path).open()
        assert excinfo.value.code == ErrorCode.STORAGE_READ_FAILED

    def test_get_note_derives_only_its_own_children(self, json_path, monkeypatch):
        backend = JsonFileBackend(json_path)
        backend.open()
        backend.commit(ChangeSet(notes=[
            Note(id="root"), Note(id="v1", parent_id="root"),
            Note(id="other"), Note(id="v2", parent_id="root"),
        ]))

        def whole_arena(notes):
            raise AssertionError("get_note should not rebuild every note")

        monkeypatch.setattr(json_backend_module, "attach_children", whole_arena)
        note = backend.get_note("root")
        assert note.children == ["v1", "v2"]
        assert backend.get_note("v1").children == []
        assert backend.get_note("missing") is None

    def test_failed_write_keeps_cache_and_file(self, json_path, monkeypatch):
        backend = JsonFileBackend(json_path)
        backend.open()
        backend.commit(ChangeSet(notes=[Note(id="a")]))
        on_disk = json_path.read_text()

        def broken_write(path, document):
            raise StorageError("disk full", operation="write")

        monkeypatch.setattr(json_backend_module, "write_document", broken_write)
        with pytest.raises(StorageError):
            backend.commit(ChangeSet(deleted_note_ids=["a"], notes=[Note(id="b")]))
        assert [n.id for n in backend.get_all_notes()] == ["a"]
        assert json_path.read_text() == on_disk

    def test_reads_return_copies(self, json_path):
        backend = JsonFileBackend(json_path)
        backend.open()
        backend.commit(ChangeSet(notes=[Note(id="a", title="A")]))
        backend.get_note("a").title = "mutated"
        assert backend.get_note("a").title == "A"

    def test_closed_backend(self, json_path):
        backend = JsonFileBackend(json_path)
        with pytest.raises(StorageError) as excinfo:
            backend.get_all_notes()
        assert excinfo.value.code == ErrorCode.STORAGE_CLOSED


class TestSqlBackend:
    def test_in_memory_database(self):
        backend = SqlBackend("sqlite:///:memory:")
        backend.open()
        backend.commit(ChangeSet(notes=[Note(id="a", title="A", tags=["x"])]))
        note = backend.get_note("a")
        assert note.title == "A"
        assert note.tags == ["x"]
        assert note.created_at.tzinfo is not None
        backend.close()

    def test_insertion_order_is_kept(self):
        backend = SqlBackend("sqlite:///:memory:")
        backend.open()
        for note_id in ("zeta", "alpha", "mid"):
            backend.commit(ChangeSet(notes=[Note(id=note_id)]))
        # Updating in place doesn't move a row
        backend.commit(ChangeSet(notes=[Note(id="zeta", title="z")]))
        assert [n.id for n in backend.get_all_notes()] == ["zeta", "alpha", "mid"]

    def test_anchor_columns(self):
        backend = SqlBackend("sqlite:///:memory:")
        backend.open()
        backend.commit(ChangeSet(
            notes=[Note(id="a"), Note(id="b")],
            connections=[Connection(id="l", source="a", target="b", type="reference",
                                    source_anchor="top", target_line_index=3)],
        ))
        link = backend.get_connection("l")
        assert link.source_anchor.value == "top"
        assert link.target_anchor is None
        assert link.target_line_index == 3

    def test_commit_is_rolled_back_on_error(self, monkeypatch):
        backend = SqlBackend("sqlite:///:memory:")
        backend.open()

        def broken_row(connection):
            raise SQLAlchemyError("constraint failed")

        monkeypatch.setattr(sql_backend_module, "_connection_to_row", broken_row)
        with pytest.raises(StorageError) as excinfo:
            backend.commit(ChangeSet(
                notes=[Note(id="a")],
                connections=[Connection(source="a", target="a2")],
            ))
        assert excinfo.value.code == ErrorCode.STORAGE_WRITE_FAILED
        assert backend.get_all_notes() == []

    def test_requires_url_or_engine(self):
        with pytest.raises(ValueError):
            SqlBackend()

    def test_closed_backend(self):
        backend = SqlBackend("sqlite:///:memory:")
        with pytest.raises(StorageError) as excinfo:
            backend.get_all_notes()
        assert excinfo.value.code == ErrorCode.STORAGE_CLOSED


class TestSqlMigrations:
    def test_additive_columns_are_added(self, temp_dirs):
        data_dir, _ = temp_dirs
        db_url = f"sqlite:///{data_dir / 'old.db'}"
        engine = create_engine(db_url)
        with engine.begin() as conn:
            conn.execute(text(
                "CREATE TABLE notes (id VARCHAR(64) PRIMARY KEY, title TEXT NOT NULL, "
                "content TEXT NOT NULL, x INTEGER NOT NULL, y INTEGER NOT NULL, "
                "width INTEGER NOT NULL, height INTEGER NOT NULL, "
                "created_at DATETIME NOT NULL, updated_at DATETIME NOT NULL, "
                "parent_id VARCHAR(64))"
            ))
            conn.execute(text(
                "CREATE TABLE links (id VARCHAR(64) PRIMARY KEY, "
                "source_note_id VARCHAR(64) NOT NULL, source_line_index INTEGER NOT NULL, "
                "target_note_id VARCHAR(64) NOT NULL, target_line_index INTEGER NOT NULL, "
                "type VARCHAR(32) NOT NULL, created_at DATETIME NOT NULL)"
            ))
            conn.execute(text(
                "INSERT INTO notes VALUES ('old', 'Old', '', 100, 100, 300, 200, "
                "'2024-01-01 12:00:00.000000', '2024-01-01 12:00:00.000000', NULL)"
            ))
        engine.dispose()

        migrated = init_db(db_url)
        columns = {c["name"] for c in inspect(migrated).get_columns("notes")}
        assert {"is_main", "tags"} <= columns
        link_columns = {c["name"] for c in inspect(migrated).get_columns("links")}
        assert {"source_position", "target_position", "label"} <= link_columns

        backend = SqlBackend(engine=migrated)
        backend.open()
        note = backend.get_note("old")
        assert note.title == "Old"
        assert note.is_main is False
        assert note.tags == []
        backend.close()

    def test_migration_is_idempotent(self, temp_dirs):
        data_dir, _ = temp_dirs
        db_url = f"sqlite:///{data_dir / 'twice.db'}"
        init_db(db_url).dispose()
        engine = init_db(db_url)
        assert "is_main" in {c["name"] for c in inspect(engine).get_columns("notes")}
        engine.dispose()
