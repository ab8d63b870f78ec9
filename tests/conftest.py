"""Common test fixtures for the Tangle notes store."""

import tempfile
from pathlib import Path

import pytest

from tangle_notes.config import config
from tangle_notes.observability import metrics
from tangle_notes.services.note_store import NoteStore
from tangle_notes.storage.json_backend import JsonFileBackend
from tangle_notes.storage.sql_backend import SqlBackend
from tests.fakes import FakeClock


@pytest.fixture(autouse=True)
def _isolated_metrics(monkeypatch):
    """Keep the global metrics collector from writing to the home directory."""
    monkeypatch.setattr(metrics, "_auto_save_interval", 0)
    monkeypatch.setattr(config, "metrics_enabled", False)
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def temp_dirs():
    """Create temporary directories for data and exports."""
    with tempfile.TemporaryDirectory() as data_dir:
        with tempfile.TemporaryDirectory() as export_dir:
            yield Path(data_dir), Path(export_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Point the global config at temp paths (auto-restored even on crash)."""
    data_dir, export_dir = temp_dirs
    monkeypatch.setattr(config, "base_dir", data_dir)
    monkeypatch.setattr(config, "json_path", data_dir / "notes.json")
    monkeypatch.setattr(config, "database_path", data_dir / "tangle.db")
    monkeypatch.setattr(config, "export_dir", export_dir)
    yield config


@pytest.fixture
def clock():
    """A controllable clock starting at a fixed instant."""
    return FakeClock()


def make_backend(kind, data_dir):
    if kind == "json":
        return JsonFileBackend(data_dir / "notes.json")
    return SqlBackend(f"sqlite:///{data_dir / 'tangle.db'}")


@pytest.fixture(params=["json", "sql"])
def backend_kind(request):
    return request.param


@pytest.fixture
def store(backend_kind, temp_dirs, clock):
    """An opened NoteStore over each backend, driven by the fake clock."""
    data_dir, export_dir = temp_dirs
    note_store = NoteStore(
        make_backend(backend_kind, data_dir),
        clock=clock,
        export_dir=export_dir,
    )
    note_store.open()
    yield note_store
    note_store.close()


@pytest.fixture
def json_store(temp_dirs, clock):
    """An opened NoteStore over the JSON document backend."""
    data_dir, export_dir = temp_dirs
    note_store = NoteStore(make_backend("json", data_dir), clock=clock, export_dir=export_dir)
    note_store.open()
    yield note_store
    note_store.close()
