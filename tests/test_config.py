"""
Unit tests for the layered config store.
"""

import unittest
import tempfile
import json
import shutil
from pathlib import Path

from config import (
    ConfigStore,
    ConfigValidationError,
    DEFAULT_CONFIG,
    deep_merge,
    default_config,
    validate_config,
)
from state import ProjectPaths, atomic_write_json


class TestDeepMerge(unittest.TestCase):
    """Test deep_merge."""

    def test_nested_objects_merge(self):
        result = deep_merge({"a": {"x": 1, "y": 2}}, {"a": {"y": 3}})
        self.assertEqual(result, {"a": {"x": 1, "y": 3}})

    def test_lists_replace(self):
        result = deep_merge({"a": [1, 2, 3]}, {"a": [4]})
        self.assertEqual(result, {"a": [4]})

    def test_inputs_not_mutated(self):
        target = {"a": {"x": 1}}
        source = {"a": {"y": 2}}

        deep_merge(target, source)

        self.assertEqual(target, {"a": {"x": 1}})
        self.assertEqual(source, {"a": {"y": 2}})


class TestValidateConfig(unittest.TestCase):
    """Test validate_config."""

    def test_defaults_are_valid(self):
        self.assertTrue(validate_config(default_config()).valid)

    def test_partial_config_is_valid(self):
        self.assertTrue(validate_config({"lockTimeout": 1000}).valid)

    def test_every_violation_reported(self):
        """Test all errors are aggregated, not just the first."""
        result = validate_config({
            "collaboration": {"mode": "aggressive", "suggestionFormat": "xml"},
            "lockTimeout": -1,
            "suggestionRetention": "forever",
            "ideSpecific": [],
        })

        self.assertFalse(result.valid)
        self.assertEqual(len(result.errors), 5)

    def test_boolean_is_not_a_number(self):
        self.assertFalse(validate_config({"lockTimeout": True}).valid)

    def test_non_object_rejected(self):
        self.assertFalse(validate_config(["not", "an", "object"]).valid)


class TestConfigStore(unittest.TestCase):
    """Test ConfigStore class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.paths = ProjectPaths.for_root(
            Path(self.temp_dir) / "project", home=Path(self.temp_dir) / "home"
        )
        self.store = ConfigStore(self.paths)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_load_defaults_when_missing(self):
        """Test load_config returns defaults with no local file."""
        self.assertEqual(self.store.load_config(), DEFAULT_CONFIG)

    def test_save_then_load(self):
        """Test a saved config loads back merged onto defaults."""
        config = {"collaboration": {"mode": "passive"}, "lockTimeout": 5000}

        self.store.save_config(config)

        self.assertEqual(self.store.load_config(), deep_merge(DEFAULT_CONFIG, config))

    def test_save_invalid_mode_writes_nothing(self):
        """Test an invalid config raises before the file is touched."""
        with self.assertRaises(ConfigValidationError) as ctx:
            self.store.save_config({"collaboration": {"mode": "aggressive"}})

        self.assertIn("aggressive", str(ctx.exception))
        self.assertEqual(len(ctx.exception.errors), 1)
        self.assertFalse(self.paths.local_config.exists())

    def test_save_invalid_keeps_existing_file(self):
        self.store.save_config({"lockTimeout": 1000})
        before = self.paths.local_config.read_text()

        with self.assertRaises(ConfigValidationError):
            self.store.save_config({"lockTimeout": -5})

        self.assertEqual(self.paths.local_config.read_text(), before)

    def test_corrupt_local_file_yields_defaults(self):
        self.paths.local_config.parent.mkdir(parents=True)
        self.paths.local_config.write_text("{broken")

        with self.assertLogs("config", level="ERROR"):
            self.assertEqual(self.store.load_config(), DEFAULT_CONFIG)

    def test_effective_config_layers(self):
        """Test defaults, then global, then local."""
        atomic_write_json(self.paths.global_config, {
            "lockTimeout": 1000,
            "collaboration": {"mode": "passive", "preferIDE": False},
        })
        atomic_write_json(self.paths.local_config, {"collaboration": {"mode": "independent"}})

        config = self.store.get_effective_config()

        self.assertEqual(config["lockTimeout"], 1000)
        self.assertEqual(config["collaboration"]["mode"], "independent")
        self.assertFalse(config["collaboration"]["preferIDE"])
        self.assertEqual(config["suggestionRetention"], DEFAULT_CONFIG["suggestionRetention"])

    def test_effective_config_cached_until_cleared(self):
        """Test the effective config is cached until clear_cache."""
        self.assertEqual(self.store.get("lockTimeout"), 30000)

        atomic_write_json(self.paths.local_config, {"lockTimeout": 10})
        self.assertEqual(self.store.get("lockTimeout"), 30000)

        self.store.clear_cache()
        self.assertEqual(self.store.get("lockTimeout"), 10)

    def test_effective_config_is_a_copy(self):
        config = self.store.get_effective_config()
        config["collaboration"]["mode"] = "passive"

        self.assertEqual(self.store.get("collaboration.mode"), "active")

    def test_get_dotted_key(self):
        self.assertEqual(self.store.get("collaboration.mode"), "active")
        self.assertTrue(self.store.get("ideSpecific.kiro.respectSpecs"))
        self.assertIsNone(self.store.get("collaboration.missing"))
        self.assertIsNone(self.store.get("lockTimeout.nested"))

    def test_set_persists_and_invalidates_cache(self):
        """Test set writes the local file and get sees the new value."""
        self.store.get_effective_config()

        self.store.set("collaboration.mode", "passive")

        self.assertEqual(self.store.get("collaboration.mode"), "passive")
        with open(self.paths.local_config) as f:
            self.assertEqual(json.load(f), {"collaboration": {"mode": "passive"}})

    def test_set_creates_intermediate_objects(self):
        self.store.set("ideSpecific.cursor.rules", True)
        self.assertTrue(self.store.get("ideSpecific.cursor.rules"))

    def test_set_invalid_value_raises(self):
        with self.assertRaises(ConfigValidationError):
            self.store.set("collaboration.mode", "aggressive")
        self.assertFalse(self.paths.local_config.exists())

    def test_set_through_scalar_raises(self):
        self.store.set("lockTimeout", 100)
        with self.assertRaises(ValueError):
            self.store.set("lockTimeout.value", 1)

    def test_set_empty_key_raises(self):
        with self.assertRaises(ValueError):
            self.store.set("", 1)


if __name__ == "__main__":
    unittest.main()
