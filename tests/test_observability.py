"""Tests for the observability module.

Tests for metrics collection, logging configuration, and error sanitization.
"""
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from tangle_notes.config import config
from tangle_notes.observability import (ROOT_LOGGER_NAME, MetricsCollector,
                                        _sanitize_error_message, configure_logging,
                                        metrics, timed_operation, traced)


class TestErrorMessageSanitization:
    def test_sanitize_none_returns_none(self):
        assert _sanitize_error_message(None) is None

    def test_sanitize_removes_home_directory(self):
        home = str(Path.home())
        result = _sanitize_error_message(f"{home}/secret/file.txt: Permission denied")
        assert home not in result
        assert result.startswith("~")

    def test_sanitize_removes_newlines(self):
        assert _sanitize_error_message("Line 1\nLine 2\rLine 3") == "Line 1 Line 2 Line 3"

    def test_sanitize_truncates_long_messages(self):
        result = _sanitize_error_message("a" * 300)
        assert len(result) == 200
        assert result.endswith("...")


class TestMetricsCollector:
    @pytest.fixture
    def metrics_file(self, tmp_path):
        return tmp_path / "metrics.json"

    @pytest.fixture
    def collector(self, metrics_file):
        return MetricsCollector(metrics_file=metrics_file, auto_save_interval=0, enabled=True)

    def test_record_operations(self, collector):
        collector.record_operation("update_note", 10.0, True)
        collector.record_operation("update_note", 30.0, False, "boom")
        data = collector.get_metrics()["update_note"]
        assert data["count"] == 2
        assert data["error_count"] == 1
        assert data["avg_duration_ms"] == 20.0
        assert data["last_error"] == "boom"
        summary = collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["overall_success_rate"] == 0.5

    def test_save_writes_operations_and_tallies(self, collector, metrics_file):
        collector.record_operation("delete_note", 5.0, True, tallies={"notes_deleted": 3})
        assert collector.save_metrics()
        saved = json.loads(metrics_file.read_text())
        assert saved["operations"]["delete_note"]["count"] == 1
        assert saved["operations"]["delete_note"]["tallies"] == {"notes_deleted": 3}
        assert collector.get_summary()["store_activity"]["notes_deleted"] == 3

    def test_auto_save(self, metrics_file):
        collector = MetricsCollector(metrics_file=metrics_file, auto_save_interval=2,
                                     enabled=True)
        collector.record_operation("op", 1.0, True)
        assert not metrics_file.exists()
        collector.record_operation("op", 1.0, True)
        assert metrics_file.exists()

    def test_previous_run_is_not_loaded(self, metrics_file):
        metrics_file.write_text(json.dumps({"operations": {"op": {"count": 9}}}))
        collector = MetricsCollector(metrics_file=metrics_file)
        assert collector.get_metrics() == {}

    def test_disabled_collector_never_writes(self, metrics_file):
        collector = MetricsCollector(metrics_file=metrics_file, auto_save_interval=1,
                                     enabled=False)
        collector.record_operation("op", 1.0, True)
        assert not collector.save_metrics()
        assert not metrics_file.exists()
        assert collector.get_metrics()["op"]["count"] == 1

    def test_follows_config_flag(self, metrics_file, monkeypatch):
        monkeypatch.setattr(config, "metrics_enabled", False)
        monkeypatch.setattr(metrics, "_metrics_file", metrics_file)
        monkeypatch.setattr(metrics, "_auto_save_interval", 2)
        for _ in range(2):
            with timed_operation("create_note"):
                pass
        assert not metrics_file.exists()

        monkeypatch.setattr(config, "metrics_enabled", True)
        assert metrics.save_metrics()
        assert metrics_file.exists()

    def test_reset(self, collector):
        collector.record_operation("op", 1.0, True)
        collector.reset()
        assert collector.get_metrics() == {}


class TestTimedOperation:
    def test_success_is_recorded(self):
        with timed_operation("sample_op", note_id="n1") as op:
            op["count"] = 3
        assert metrics.get_metrics()["sample_op"]["success_count"] == 1

    def test_exception_is_recorded_and_reraised(self):
        with pytest.raises(RuntimeError):
            with timed_operation("failing_op"):
                raise RuntimeError("bad")
        assert metrics.get_metrics()["failing_op"]["last_error"] == "bad"

    def test_soft_failure(self):
        with timed_operation("soft_op") as op:
            op["failed"] = "NOTE_NOT_FOUND"
        data = metrics.get_metrics()["soft_op"]
        assert data["error_count"] == 1
        assert data["last_error"] == "NOTE_NOT_FOUND"

    def test_store_failures_reach_metrics(self, store):
        store.update_note("missing", {"title": "x"})
        assert metrics.get_metrics()["update_note"]["error_count"] == 1

    def test_store_activity_is_tallied(self, store, clock):
        note = store.create_note({"title": "a"}).value
        store.update_note(note.id, {"title": "b"})
        clock.advance(hours=2)
        store.update_note(note.id, {"title": "c"})
        store.delete_note(note.id)

        activity = metrics.get_summary()["store_activity"]
        assert activity["merges"] == 1
        assert activity["forks"] == 1
        assert activity["notes_written"] == 3
        assert activity["notes_deleted"] == 2
        assert activity["connections_deleted"] == 1
        assert metrics.get_metrics()["delete_note"]["tallies"] == {
            "notes_deleted": 2, "connections_deleted": 1,
        }

    def test_traced_decorator(self):
        @traced("traced_op")
        def work():
            return [1, 2]

        assert work() == [1, 2]
        assert metrics.get_metrics()["traced_op"]["count"] == 1


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_handlers(self):
        logger = logging.getLogger(ROOT_LOGGER_NAME)
        handlers = list(logger.handlers)
        level = logger.level
        yield
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers = handlers
        logger.setLevel(level)

    def test_creates_rotating_log_file(self, tmp_path):
        log_dir = configure_logging(log_dir=tmp_path / "logs", console=False)
        assert log_dir == tmp_path / "logs"
        logging.getLogger("tangle_notes.test").info("hello")
        assert "hello" in (log_dir / "tangle.log").read_text()

    def test_handlers_are_not_duplicated(self, tmp_path):
        configure_logging(log_dir=tmp_path, console=False)
        configure_logging(log_dir=tmp_path, console=False)
        file_handlers = [h for h in logging.getLogger(ROOT_LOGGER_NAME).handlers
                         if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
