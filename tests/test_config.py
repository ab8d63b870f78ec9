"""Tests for configuration loading and validation."""
import datetime
from pathlib import Path

import pytest
from pydantic import ValidationError

from tangle_notes.config import TangleConfig
from tangle_notes.services.note_store import NoteStore
from tangle_notes.storage.json_backend import JsonFileBackend
from tangle_notes.storage.sql_backend import SqlBackend


class TestTangleConfig:
    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TANGLE_BACKEND", "JSON")
        monkeypatch.setenv("TANGLE_FORK_WINDOW_SECONDS", "120")
        monkeypatch.setenv("TANGLE_DEFAULT_NOTE_WIDTH", "250")
        cfg = TangleConfig()
        assert cfg.backend == "json"
        assert cfg.fork_window == datetime.timedelta(minutes=2)
        assert cfg.default_note_width == 250

    def test_defaults(self, monkeypatch):
        for name in ("TANGLE_BACKEND", "TANGLE_FORK_WINDOW_SECONDS",
                     "TANGLE_WRITE_TIMEOUT_SECONDS"):
            monkeypatch.delenv(name, raising=False)
        cfg = TangleConfig()
        assert cfg.backend == "sql"
        assert cfg.fork_window == datetime.timedelta(hours=1)
        assert cfg.write_timeout is None

    def test_non_positive_window_disables_forking(self):
        assert TangleConfig(fork_window_seconds=0).fork_window is None

    @pytest.mark.parametrize("overrides", [
        {"backend": "mongo"},
        {"default_note_width": 0},
        {"write_timeout_seconds": -1},
    ])
    def test_invalid_settings(self, overrides):
        with pytest.raises(ValidationError):
            TangleConfig(**overrides)

    def test_relative_paths_use_base_dir(self, tmp_path):
        cfg = TangleConfig(base_dir=tmp_path, json_path=Path("data/n.json"))
        assert cfg.get_json_path() == tmp_path / "data" / "n.json"
        assert (tmp_path / "data").is_dir()
        assert cfg.get_absolute_path(Path("/abs/x")) == Path("/abs/x")

    def test_db_url(self, tmp_path):
        cfg = TangleConfig(base_dir=tmp_path, database_path=Path("db/t.db"))
        assert cfg.get_db_url() == f"sqlite:///{tmp_path / 'db' / 't.db'}"


class TestStoreFromConfig:
    def test_json_backend(self, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "backend", "json")
        store = NoteStore.from_config(test_config)
        assert isinstance(store.backend, JsonFileBackend)
        with store:
            assert store.create_note({"title": "x"}).success

    def test_sql_backend(self, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "backend", "sql")
        monkeypatch.setattr(test_config, "write_timeout_seconds", 2.0)
        store = NoteStore.from_config(test_config)
        assert isinstance(store.backend, SqlBackend)
        assert store.write_timeout == 2.0
        with store:
            assert store.get_all_notes() == []
