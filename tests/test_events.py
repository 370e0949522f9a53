"""
Unit tests for event types, listener lists and the event log.
"""

import unittest
import tempfile
import json
import shutil
from pathlib import Path

from events import (
    ConsumptionEvent,
    Event,
    EventLogger,
    EventType,
    IDEActivity,
    ListenerList,
    LockEvent,
    LockEventType,
    read_events,
)


class TestEvent(unittest.TestCase):
    """Test Event dataclass."""

    def test_event_to_json_line(self):
        """Test Event serializes to JSON line correctly."""
        event = Event(
            timestamp="2025-01-01T00:00:00Z",
            type="TEST_EVENT",
            data={"key": "value"},
        )

        data = json.loads(event.to_json_line())

        self.assertEqual(data["timestamp"], "2025-01-01T00:00:00Z")
        self.assertEqual(data["type"], "TEST_EVENT")
        self.assertEqual(data["data"]["key"], "value")


class TestListenerList(unittest.TestCase):
    """Test callback isolation."""

    def test_emit_reaches_every_listener(self):
        received = []
        listeners = ListenerList("test")
        listeners.add(lambda e: received.append(("a", e)))
        listeners.add(lambda e: received.append(("b", e)))

        listeners.emit("event")

        self.assertEqual(received, [("a", "event"), ("b", "event")])

    def test_failing_listener_does_not_block_others(self):
        """Test a raising listener is logged and the rest still run."""
        received = []

        def broken(event):
            raise RuntimeError("boom")

        listeners = ListenerList("test")
        listeners.add(broken)
        listeners.add(received.append)

        with self.assertLogs("events", level="ERROR"):
            listeners.emit("event")

        self.assertEqual(received, ["event"])

    def test_remove(self):
        """Test remove unregisters, and is a no-op for unknown callbacks."""
        received = []
        listeners = ListenerList("test")
        listeners.add(received.append)
        listeners.remove(received.append)
        listeners.remove(print)

        listeners.emit("event")

        self.assertEqual(received, [])
        self.assertEqual(len(listeners), 0)


class TestEventLogger(unittest.TestCase):
    """Test EventLogger class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.log_path = Path(self.temp_dir) / ".codemind" / "events.log"
        self.logger = EventLogger(log_path=self.log_path)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_log_event_creates_file(self):
        """Test log_event creates the log and its directory."""
        self.logger.log_event("TEST_EVENT", {})
        self.assertTrue(self.log_path.exists())

    def test_log_event_appends_lines(self):
        """Test each event is one JSON line."""
        self.logger.log_event(EventType.MODE_CHANGED, {"from": "active", "to": "passive"})
        self.logger.log_event("CUSTOM", {"n": 1})

        lines = self.log_path.read_text().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertEqual(json.loads(lines[0])["type"], "MODE_CHANGED")
        self.assertEqual(json.loads(lines[1])["data"], {"n": 1})

    def test_log_event_write_failure_is_swallowed(self):
        """Test an unwritable log path is logged, not raised."""
        blocker = Path(self.temp_dir) / "blocker"
        blocker.write_text("")
        logger = EventLogger(blocker / "events.log")

        with self.assertLogs("events", level="ERROR"):
            logger.log_event("TEST_EVENT", {})

    def test_own_lock_event_type(self):
        """Test CodeMind lock events map to LOCK_* types."""
        self.logger.log_lock_event(
            LockEvent(type=LockEventType.ACQUIRED, owner="codemind", filePath="src/a.js")
        )
        self.logger.log_lock_event(
            LockEvent(type=LockEventType.YIELDED, owner="codemind", filePath="src/a.js")
        )

        events = read_events(self.log_path)
        self.assertEqual([e.type for e in events], ["LOCK_ACQUIRED", "LOCK_YIELDED"])
        self.assertEqual(events[0].data["filePath"], "src/a.js")

    def test_ide_lock_event_type(self):
        """Test IDE lock events map to IDE_LOCK_CHANGED."""
        self.logger.log_lock_event(
            LockEvent(type=LockEventType.RELEASED, owner="ide", filePath=".kiro/agent.lock")
        )

        event = read_events(self.log_path)[0]
        self.assertEqual(event.type, "IDE_LOCK_CHANGED")
        self.assertEqual(event.data["type"], "released")

    def test_consumption_and_activity(self):
        self.logger.log_consumption(ConsumptionEvent(suggestionId="sug_1", consumedBy="kiro"))
        self.logger.log_ide_activity(IDEActivity(ide="kiro", action="modified", file=".kiro/agent-status.json"))

        events = read_events(self.log_path)
        self.assertEqual(events[0].data, {"suggestionId": "sug_1", "consumedBy": "kiro"})
        self.assertEqual(events[1].type, "IDE_ACTIVITY")
        self.assertEqual(events[1].data["ide"], "kiro")


class TestReadEvents(unittest.TestCase):
    """Test read_events."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.log_path = Path(self.temp_dir) / "events.log"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_file_returns_empty(self):
        self.assertEqual(read_events(self.log_path), [])

    def test_limit_keeps_most_recent(self):
        """Test limit returns the last N events."""
        logger = EventLogger(self.log_path)
        for i in range(5):
            logger.log_event("TEST_EVENT", {"i": i})

        events = read_events(self.log_path, limit=2)

        self.assertEqual([e.data["i"] for e in events], [3, 4])

    def test_malformed_lines_skipped(self):
        """Test malformed lines are skipped with a warning."""
        logger = EventLogger(self.log_path)
        logger.log_event("GOOD", {})
        with open(self.log_path, "a") as f:
            f.write("not json\n")
            f.write(json.dumps({"unexpected": True}) + "\n")
        logger.log_event("ALSO_GOOD", {})

        events = read_events(self.log_path)

        self.assertEqual([e.type for e in events], ["GOOD", "ALSO_GOOD"])


if __name__ == "__main__":
    unittest.main()
