"""Tests for the tiered config loader (base YAML, env overlay, CP_* variables)."""

import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

import yaml

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _project_root)

from engine.config_loader import (
    ConfigLoader, _auto_convert, _deep_merge, _load_env_overrides,
    get_config, load_config, reset_config,
)


class TestDeepMerge(unittest.TestCase):
    """Test recursive dict merging."""

    def test_nested_merge(self):
        base = {"anomaly": {"sensitivity": 0.95, "window_size": 1000}, "x": 3}
        overlay = {"anomaly": {"sensitivity": 0.9, "min_samples": 50}}
        result = _deep_merge(base, overlay)
        self.assertEqual(
            result["anomaly"],
            {"sensitivity": 0.9, "window_size": 1000, "min_samples": 50},
        )
        self.assertEqual(result["x"], 3)

    def test_overlay_replaces_list(self):
        result = _deep_merge({"a": [1, 2, 3]}, {"a": [4]})
        self.assertEqual(result["a"], [4])

    def test_immutability(self):
        base = {"a": {"x": 1}}
        overlay = {"a": {"y": 2}}
        _deep_merge(base, overlay)
        self.assertEqual(base, {"a": {"x": 1}})
        self.assertEqual(overlay, {"a": {"y": 2}})


class TestAutoConvert(unittest.TestCase):

    def test_booleans(self):
        self.assertIs(_auto_convert("true"), True)
        self.assertIs(_auto_convert("No"), False)

    def test_numbers(self):
        self.assertEqual(_auto_convert("2000"), 2000)
        self.assertEqual(_auto_convert("1"), 1)
        self.assertAlmostEqual(_auto_convert("0.95"), 0.95)

    def test_string_passthrough(self):
        self.assertEqual(_auto_convert("3s"), "3s")


class TestEnvOverrides(unittest.TestCase):

    def test_mapped_variable(self):
        result = _load_env_overrides({"CP_BATCH_MIN_SIZE": "3000"})
        self.assertEqual(result, {"batch_optimizer": {"min_batch": 3000}})

    def test_generic_variable(self):
        result = _load_env_overrides({"CP_CONFIG__ORDERING__WEIGHTS__FEE": "0.3"})
        self.assertEqual(result, {"ordering": {"weights": {"fee": 0.3}}})

    def test_unrelated_variables_ignored(self):
        self.assertEqual(_load_env_overrides({"HOME": "/root", "CC_ENV": "x"}), {})


class TestConfigLoader(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)
        reset_config()

    def _write_yaml(self, path, data):
        full = Path(self.tmpdir) / path
        full.parent.mkdir(parents=True, exist_ok=True)
        with open(full, "w") as f:
            yaml.dump(data, f)

    def test_base_file(self):
        self._write_yaml("control_plane.yaml", {"lifecycle": {"update_interval": 500}})
        loader = load_config(project_root=self.tmpdir, environ={})
        self.assertEqual(loader.get("lifecycle.update_interval"), 500)
        self.assertEqual(loader.sources, ["base:control_plane.yaml"])

    def test_overlay_wins_over_base(self):
        self._write_yaml("control_plane.yaml", {"anomaly": {"sensitivity": 0.95, "min_samples": 100}})
        self._write_yaml("config/prod.yaml", {"anomaly": {"sensitivity": 0.99}})
        loader = load_config(env="prod", project_root=self.tmpdir, environ={})
        self.assertEqual(loader.get("anomaly.sensitivity"), 0.99)
        self.assertEqual(loader.get("anomaly.min_samples"), 100)
        self.assertIn("overlay:config/prod.yaml", loader.sources)

    def test_env_wins_over_overlay(self):
        self._write_yaml("control_plane.yaml", {"batch_optimizer": {"min_batch": 2000}})
        self._write_yaml("config/dev.yaml", {"batch_optimizer": {"min_batch": 2500}})
        loader = load_config(
            env="dev", project_root=self.tmpdir,
            environ={"CP_BATCH_MIN_SIZE": "4000"},
        )
        self.assertEqual(loader.get("batch_optimizer.min_batch"), 4000)

    def test_missing_key_default(self):
        loader = load_config(project_root=self.tmpdir, environ={})
        self.assertEqual(loader.get("consensus.partition_threshold", "5s"), "5s")
        self.assertEqual(loader.section("consensus"), {})

    def test_meta_injected(self):
        loader = load_config(env="staging", project_root=self.tmpdir, environ={})
        meta = loader.get("_config_meta")
        self.assertEqual(meta["env"], "staging")

    def test_non_mapping_yaml_rejected(self):
        full = Path(self.tmpdir) / "control_plane.yaml"
        full.write_text("- just\n- a list\n")
        with self.assertRaises(ValueError):
            load_config(project_root=self.tmpdir, environ={})

    def test_get_all_is_copy(self):
        self._write_yaml("control_plane.yaml", {"ordering": {"enabled": True}})
        loader = load_config(project_root=self.tmpdir, environ={})
        data = loader.get_all()
        data["ordering"]["enabled"] = False
        self.assertTrue(loader.get("ordering.enabled"))

    def test_reload_picks_up_changes(self):
        self._write_yaml("control_plane.yaml", {"lifecycle": {"ab_fraction": 0.05}})
        loader = load_config(project_root=self.tmpdir, environ={})
        self._write_yaml("control_plane.yaml", {"lifecycle": {"ab_fraction": 0.1}})
        loader.reload()
        self.assertEqual(loader.get("lifecycle.ab_fraction"), 0.1)

    def test_singleton(self):
        first = get_config(env="dev", project_root=self.tmpdir)
        second = get_config(env="prod", project_root="/elsewhere")
        self.assertIs(first, second)
        reset_config()
        self.assertIsNot(get_config(env="dev", project_root=self.tmpdir), first)

    def test_repository_base_file_loads(self):
        loader = ConfigLoader(env="prod", project_root=_project_root, environ={})
        loader.load()
        self.assertEqual(loader.get("batch_optimizer.default_batch"), 8000)
        self.assertEqual(loader.get("logging.level"), "WARNING")


if __name__ == "__main__":
    unittest.main()
