"""
Adaptive Control Plane — Structured Logging Tests

Tests:
  - test_log_entry_schema — every entry has the required fields
  - test_json_parseable — every log line is valid JSON
  - test_event_fields — events carry component, action and run_id
  - test_event_levels — warning()/error() map to WARNING/ERROR
  - test_level_filtering — events below the level are dropped
  - test_reconfigure_no_duplicates — repeated configure keeps one handler
  - test_exception_fields — exc_info adds exception.type/message
"""

import io
import json
import logging
import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _project_root)

from engine.logging import EventLogger, JSONFormatter, configure_logging, get_logger


def _capture(level="DEBUG"):
    buf = io.StringIO()
    configure_logging(level=level, stream=buf)
    return buf


def _lines(buf):
    buf.seek(0)
    return [json.loads(line) for line in buf.readlines() if line.strip()]


class TestJSONFormatter(unittest.TestCase):

    def tearDown(self):
        configure_logging(level="WARNING", stream=io.StringIO())

    def test_log_entry_schema(self):
        buf = _capture()
        get_logger("lifecycle").info("cycle %d done", 3)
        entry = _lines(buf)[0]
        for key in ("timestamp", "level", "logger", "message",
                    "service.name", "service.version"):
            self.assertIn(key, entry)
        self.assertEqual(entry["message"], "cycle 3 done")
        self.assertEqual(entry["logger"], "control_plane.lifecycle")
        self.assertEqual(entry["service.name"], "control_plane")

    def test_json_parseable(self):
        buf = _capture()
        log = get_logger("ordering")
        log.info("one")
        log.warning("two")
        log.debug("three")
        self.assertEqual(len(_lines(buf)), 3)

    def test_exception_fields(self):
        buf = _capture()
        try:
            raise ValueError("bad weights")
        except ValueError:
            get_logger("lifecycle").error("cycle aborted", exc_info=True)
        entry = _lines(buf)[0]
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad weights")

    def test_custom_service_name(self):
        buf = io.StringIO()
        configure_logging(level="INFO", stream=buf, service_name="engine-node-7")
        get_logger().info("hello")
        self.assertEqual(_lines(buf)[0]["service.name"], "engine-node-7")

    def test_formatter_merges_structured(self):
        formatter = JSONFormatter()
        record = logging.LogRecord("control_plane.x", logging.INFO, "", 0, "msg", (), None)
        record.structured = {"model": "assignment", "version": 2}
        entry = json.loads(formatter.format(record))
        self.assertEqual(entry["model"], "assignment")
        self.assertEqual(entry["version"], 2)


class TestEventLogger(unittest.TestCase):

    def tearDown(self):
        configure_logging(level="WARNING", stream=io.StringIO())

    def test_event_fields(self):
        buf = _capture()
        EventLogger("lifecycle", run_id="run-1").emit(
            "promotion", model="assignment", version=4,
        )
        entry = _lines(buf)[0]
        self.assertEqual(entry["action"], "promotion")
        self.assertEqual(entry["component"], "lifecycle")
        self.assertEqual(entry["run_id"], "run-1")
        self.assertEqual(entry["version"], 4)
        self.assertEqual(entry["logger"], "control_plane.events.lifecycle")

    def test_default_run_id_shared(self):
        self.assertEqual(EventLogger("a").run_id, EventLogger("b").run_id)

    def test_event_levels(self):
        buf = _capture()
        events = EventLogger("consensus")
        events.warning("partition_detected", unreachable=["n3"])
        events.error("training_failure", error="boom")
        entries = _lines(buf)
        self.assertEqual([e["level"] for e in entries], ["WARNING", "ERROR"])

    def test_level_filtering(self):
        buf = _capture(level="WARNING")
        events = EventLogger("batch_size")
        events.emit("batch_size_change", new_batch=9000)
        events.warning("reactive_cut")
        entries = _lines(buf)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]["action"], "reactive_cut")

    def test_reconfigure_no_duplicates(self):
        _capture()
        buf = _capture()
        EventLogger("anomaly").emit("anomaly_detected")
        self.assertEqual(len(_lines(buf)), 1)
        self.assertEqual(len(logging.getLogger("control_plane").handlers), 1)


if __name__ == "__main__":
    unittest.main()
