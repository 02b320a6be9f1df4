"""Tests for toolhost/logging.py — buffer, file output, filtering."""

import json

import toolhost.logging
from toolhost import __version__
from toolhost.logging import clear_buffer, get_logs, log, setup_logging


class TestLog:
    def test_writes_json_line(self, isolated_data_dir):
        log("info", "Plugin imported", plugin_id="abc", tools=2)

        lines = (isolated_data_dir / "toolhost.log").read_text().splitlines()
        entry = json.loads(lines[-1])
        assert entry["level"] == "info"
        assert entry["message"] == "Plugin imported"
        assert entry["plugin_id"] == "abc"
        assert entry["tools"] == 2
        assert "timestamp" in entry

    def test_level_is_lowercased(self, isolated_data_dir):
        log("WARN", "loud")
        assert get_logs(limit=1)[0]["level"] == "warn"

    def test_unserializable_extra_uses_str(self, isolated_data_dir):
        log("info", "path", path=isolated_data_dir)
        lines = (isolated_data_dir / "toolhost.log").read_text().splitlines()
        assert json.loads(lines[-1])["path"] == str(isolated_data_dir)


class TestGetLogs:
    def test_newest_first_and_limit(self, isolated_data_dir):
        for i in range(5):
            log("info", f"message {i}")
        entries = get_logs(limit=3)
        assert len(entries) == 3
        assert entries[0]["message"] == "message 4"

    def test_level_filter(self, isolated_data_dir):
        log("debug", "noise")
        log("info", "normal")
        log("error", "bad")
        messages = [e["message"] for e in get_logs(level="warn")]
        assert messages == ["bad"]

    def test_reads_file_after_buffer_cleared(self, isolated_data_dir):
        log("info", "persisted")
        clear_buffer()
        assert any(e["message"] == "persisted" for e in get_logs())

    def test_since(self, isolated_data_dir):
        log("info", "old")
        cutoff = get_logs(limit=1)[0]["timestamp"]
        log("info", "new")
        assert [e["message"] for e in get_logs(since=cutoff)] == ["new"]

    def test_field_filter(self, isolated_data_dir):
        log("info", "Plugin imported", plugin_id="aaa")
        log("info", "Plugin imported", plugin_id="bbb")
        log("info", "Service started", service_id="svc")
        assert [e["plugin_id"] for e in get_logs(plugin_id="bbb")] == ["bbb"]
        assert [e["message"] for e in get_logs(service_id="svc")] == ["Service started"]


class TestRotation:
    def test_rotates_when_full(self, isolated_data_dir, monkeypatch):
        monkeypatch.setattr(toolhost.logging, "MAX_LOG_BYTES", 300)
        for i in range(10):
            log("info", f"entry {i}", padding="x" * 40)

        log_file = isolated_data_dir / "toolhost.log"
        rotated = isolated_data_dir / "toolhost.log.1"
        assert rotated.exists()
        assert log_file.stat().st_size <= 300
        assert json.loads(log_file.read_text().splitlines()[-1])["message"] == "entry 9"

    def test_setup_logging_records_version(self, isolated_data_dir):
        setup_logging()
        entry = get_logs(limit=1)[0]
        assert entry["message"] == "toolhost started"
        assert entry["version"] == __version__
