"""
Unit tests for IDE detection.
"""

import unittest
import tempfile
import shutil
from pathlib import Path

from ide_detect import (
    IDE_MARKERS,
    SUPPORTED_IDES,
    detect_ide,
    get_marker,
    lock_paths,
)


class TestMarkerTable(unittest.TestCase):
    """Test the ordered marker table."""

    def test_priority_order(self):
        self.assertEqual(SUPPORTED_IDES, ["kiro", "cursor", "windsurf", "antigravity"])

    def test_get_marker(self):
        self.assertEqual(get_marker("cursor").folder, ".cursor")
        self.assertIsNone(get_marker("vim"))

    def test_lock_paths(self):
        """Test one agent.lock per marker folder, in priority order."""
        paths = lock_paths("/project")

        self.assertEqual(
            [str(path) for _, path in paths],
            [
                "/project/.kiro/agent.lock",
                "/project/.cursor/agent.lock",
                "/project/.windsurf/agent.lock",
                "/project/.antigravity/agent.lock",
            ],
        )


class TestDetectIDE(unittest.TestCase):
    """Test detect_ide."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_no_marker_returns_none(self):
        self.assertIsNone(detect_ide(self.root, environ={}))

    def test_each_marker_detected_alone(self):
        """Test each marker folder on its own reports exactly that IDE."""
        for marker in IDE_MARKERS:
            with self.subTest(ide=marker.type):
                folder = self.root / marker.folder
                folder.mkdir()
                try:
                    info = detect_ide(self.root, environ={})

                    self.assertIsNotNone(info)
                    self.assertEqual(info.type, marker.type)
                    self.assertEqual(info.configPath, str(self.root / marker.folder))
                    self.assertIsInstance(info.features, list)
                finally:
                    shutil.rmtree(folder)

    def test_marker_file_is_not_a_folder(self):
        """Test a plain file named like a marker folder is ignored."""
        (self.root / ".cursor").write_text("")
        self.assertIsNone(detect_ide(self.root, environ={}))

    def test_kiro_features(self):
        """Test Kiro feature sub-folders are reported in table order."""
        kiro = self.root / ".kiro"
        (kiro / "hooks").mkdir(parents=True)
        (kiro / "steering").mkdir()

        info = detect_ide(self.root, environ={})

        self.assertEqual(info.features, ["steering", "hooks"])

    def test_first_marker_wins(self):
        """Test table order decides between several marker folders."""
        (self.root / ".windsurf").mkdir()
        (self.root / ".cursor").mkdir()

        self.assertEqual(detect_ide(self.root, environ={}).type, "cursor")

    def test_environment_breaks_tie(self):
        """Test a single live session variable picks among present folders."""
        (self.root / ".kiro").mkdir()
        (self.root / ".cursor").mkdir()

        info = detect_ide(self.root, environ={"CURSOR_SESSION": "1"})

        self.assertEqual(info.type, "cursor")

    def test_environment_alone_is_not_evidence(self):
        """Test an env var without its folder detects nothing."""
        self.assertIsNone(detect_ide(self.root, environ={"KIRO_SESSION": "1"}))

    def test_version_file(self):
        (self.root / ".kiro").mkdir()
        (self.root / ".kiro" / "version").write_text("0.4.2\n")

        info = detect_ide(self.root, environ={})

        self.assertEqual(info.version, "0.4.2")
        self.assertEqual(info.to_dict()["version"], "0.4.2")

    def test_to_dict_without_version(self):
        (self.root / ".windsurf").mkdir()

        data = detect_ide(self.root, environ={}).to_dict()

        self.assertEqual(data["type"], "windsurf")
        self.assertEqual(data["features"], [])
        self.assertNotIn("version", data)


if __name__ == "__main__":
    unittest.main()
