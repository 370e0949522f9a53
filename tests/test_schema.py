"""
Unit tests for persisted record schemas.
"""

import unittest
from datetime import datetime, timezone

from schema import (
    AnalysisResult,
    CollaborationMode,
    LastAnalysis,
    LockFileData,
    LockFileEntry,
    SessionStats,
    StatusFileData,
    Suggestion,
    SuggestionFormat,
    SuggestionType,
    StatusState,
    LockOwner,
    VALID_MODES,
    VALID_SUGGESTION_TYPES,
    enum_value,
)


class TestEnums(unittest.TestCase):
    """Test enum tables."""

    def test_valid_modes(self):
        self.assertEqual(VALID_MODES, ["passive", "active", "independent"])

    def test_valid_suggestion_types(self):
        self.assertEqual(VALID_SUGGESTION_TYPES, ["fix", "improvement", "warning"])

    def test_enums_documented(self):
        enums = (LockOwner, SuggestionType, CollaborationMode, SuggestionFormat, StatusState, AnalysisResult)
        for enum_cls in enums:
            with self.subTest(enum_cls.__name__):
                self.assertTrue(enum_cls.__dict__.get("__doc__"))

    def test_enum_value_unwraps(self):
        """Test enum_value unwraps members and passes plain values through."""
        self.assertEqual(enum_value(CollaborationMode.PASSIVE), "passive")
        self.assertEqual(enum_value(SuggestionType.FIX), "fix")
        self.assertEqual(enum_value("active"), "active")
        self.assertIsNone(enum_value(None))


class TestLockFileData(unittest.TestCase):
    """Test lock record (de)serialization."""

    def test_to_dict(self):
        """Test LockFileData serializes entries in order."""
        data = LockFileData(
            owner="codemind",
            pid=42,
            timestamp="2025-01-01T00:00:00Z",
            files=[
                LockFileEntry(path="src/a.js", operation="analyzing", since="2025-01-01T00:00:00Z"),
                LockFileEntry(path="src/b.js", operation="fixing", since="2025-01-01T00:00:01Z"),
            ],
        )

        result = data.to_dict()

        self.assertEqual(result["owner"], "codemind")
        self.assertEqual(result["pid"], 42)
        self.assertEqual([f["path"] for f in result["files"]], ["src/a.js", "src/b.js"])
        self.assertEqual(result["files"][1]["operation"], "fixing")

    def test_from_dict(self):
        """Test LockFileData parses a full record."""
        data = LockFileData.from_dict({
            "owner": "codemind",
            "pid": 7,
            "timestamp": "2025-01-01T00:00:00Z",
            "files": [{"path": "x.py", "operation": "analyzing", "since": "2025-01-01T00:00:00Z"}],
        })

        self.assertEqual(data.paths(), ["x.py"])
        self.assertEqual(data.find("x.py").operation, "analyzing")
        self.assertIsNone(data.find("y.py"))

    def test_from_dict_defaults_missing_files(self):
        """Test a record without files parses to an empty list."""
        data = LockFileData.from_dict({"owner": "kiro", "timestamp": "2025-01-01T00:00:00Z"})
        self.assertEqual(data.files, [])
        self.assertEqual(data.pid, 0)

    def test_from_dict_rejects_malformed(self):
        """Test malformed records raise."""
        with self.assertRaises(KeyError):
            LockFileData.from_dict({"pid": 1, "timestamp": "2025-01-01T00:00:00Z"})
        with self.assertRaises(TypeError):
            LockFileData.from_dict(["not", "a", "dict"])


class TestSuggestion(unittest.TestCase):
    """Test Suggestion (de)serialization."""

    def setUp(self):
        self.timestamp = datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc)

    def test_to_dict_omits_empty_optional_fields(self):
        """Test fix and consumedBy are omitted when unset."""
        suggestion = Suggestion(
            id="sug_1",
            timestamp=self.timestamp,
            file="src/a.js",
            type="fix",
            confidence=0.5,
            description="x",
        )

        data = suggestion.to_dict()

        self.assertNotIn("fix", data)
        self.assertNotIn("consumedBy", data)
        self.assertFalse(data["consumed"])
        self.assertEqual(data["timestamp"], "2025-01-01T10:00:00Z")

    def test_from_dict_parses_timestamp(self):
        """Test from_dict reconstitutes an aware datetime."""
        suggestion = Suggestion.from_dict({
            "id": "sug_1",
            "timestamp": "2025-01-01T10:00:00Z",
            "file": "src/a.js",
            "type": "warning",
            "confidence": 0.9,
            "description": "check this",
            "context": {"line": 3},
            "fix": {"replace": "y"},
            "consumed": True,
            "consumedBy": "kiro",
        })

        self.assertEqual(suggestion.timestamp, self.timestamp)
        self.assertEqual(suggestion.context, {"line": 3})
        self.assertEqual(suggestion.fix, {"replace": "y"})
        self.assertTrue(suggestion.consumed)
        self.assertEqual(suggestion.consumedBy, "kiro")

    def test_from_dict_missing_field_raises(self):
        with self.assertRaises(KeyError):
            Suggestion.from_dict({"id": "sug_1", "timestamp": "2025-01-01T10:00:00Z"})


class TestStatusFileData(unittest.TestCase):
    """Test status snapshot serialization."""

    def test_to_dict_includes_current_file_and_stats(self):
        """Test the snapshot always carries currentFile and session stats."""
        snapshot = StatusFileData(
            status="analyzing",
            timestamp="2025-01-01T00:00:00Z",
            queueLength=2,
            mode="active",
            sessionStats=SessionStats(analyzed=3, issues=1, suggestions=4),
        )

        data = snapshot.to_dict()

        self.assertIsNone(data["currentFile"])
        self.assertEqual(data["queueLength"], 2)
        self.assertEqual(data["sessionStats"], {"analyzed": 3, "issues": 1, "suggestions": 4})
        self.assertNotIn("lastAnalysis", data)

    def test_to_dict_with_last_analysis(self):
        snapshot = StatusFileData(
            status="idle",
            timestamp="2025-01-01T00:00:00Z",
            queueLength=0,
            mode="passive",
            sessionStats=SessionStats(),
            currentFile="src/a.js",
            lastAnalysis=LastAnalysis(file="src/a.js", result="ok", timestamp="2025-01-01T00:00:00Z"),
        )

        data = snapshot.to_dict()

        self.assertEqual(data["currentFile"], "src/a.js")
        self.assertEqual(data["lastAnalysis"]["result"], "ok")


if __name__ == "__main__":
    unittest.main()
