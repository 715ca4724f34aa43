"""Tests for configuration loading and validation."""

import os
import shutil
import tempfile
import unittest

import yaml

from PixelOverlay.config import OverlayConfig


class TestConfigValidation(unittest.TestCase):
    def test_defaults_are_valid(self):
        config = OverlayConfig()
        config.validate()
        self.assertEqual(config.magnification, 3)
        self.assertEqual(config.tile_size, 1000)
        self.assertEqual(config.crosshair.radius, 16)
        self.assertEqual(config.cache.capacity, 100)
        self.assertEqual(config.progress.low_alpha_threshold, 64)

    def test_even_magnification_rejected(self):
        config = OverlayConfig(magnification=4)
        with self.assertRaises(ValueError) as ctx:
            config.validate()
        self.assertIn("magnification", str(ctx.exception))

    def test_radius_out_of_range_rejected(self):
        config = OverlayConfig()
        config.crosshair.radius = 40
        with self.assertRaises(ValueError):
            config.validate()

    def test_bad_color_rejected(self):
        config = OverlayConfig()
        config.crosshair.color = [255, 0]
        with self.assertRaises(ValueError) as ctx:
            config.validate()
        self.assertIn("crosshair.color", str(ctx.exception))

    def test_chunk_threshold_above_max_rejected(self):
        config = OverlayConfig()
        config.crosshair.chunk_threshold = config.crosshair.max_enhanced_pixels + 1
        with self.assertRaises(ValueError):
            config.validate()

    def test_all_errors_reported_together(self):
        config = OverlayConfig(tile_size=0, log_level="LOUD")
        config.cache.capacity = 0
        with self.assertRaises(ValueError) as ctx:
            config.validate()
        message = str(ctx.exception)
        self.assertTrue(message.startswith("Configuration validation failed:"))
        for name in ("tile_size", "log_level", "cache.capacity"):
            self.assertIn(name, message)


class TestConfigYAML(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "config.yaml")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _write(self, data):
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f)

    def test_missing_file_gives_defaults(self):
        config = OverlayConfig.from_yaml(os.path.join(self.tmpdir, "missing.yaml"))
        self.assertEqual(config, OverlayConfig())

    def test_round_trip(self):
        config = OverlayConfig(user_id=7)
        config.crosshair.border_enabled = True
        config.progress.error_map.enabled = True
        config.to_yaml(self.path)
        self.assertEqual(OverlayConfig.from_yaml(self.path), config)

    def test_nested_values_merge(self):
        self._write({"crosshair": {"radius": 20}, "progress": {"error_map": {"enabled": True}}})
        config = OverlayConfig.from_yaml(self.path)
        self.assertEqual(config.crosshair.radius, 20)
        self.assertTrue(config.progress.error_map.enabled)
        self.assertEqual(config.crosshair.alpha, 255)

    def test_unknown_key_warns(self):
        self._write({"crosshair": {"sparkle": True}})
        with self.assertLogs("pixel_overlay.config", level="WARNING") as logs:
            OverlayConfig.from_yaml(self.path)
        self.assertIn("crosshair.sparkle", "\n".join(logs.output))

    def test_type_mismatch_keeps_default(self):
        self._write({"tile_size": "big", "cache": {"capacity": 50.0}})
        with self.assertLogs("pixel_overlay.config", level="WARNING"):
            config = OverlayConfig.from_yaml(self.path)
        self.assertEqual(config.tile_size, 1000)
        self.assertEqual(config.cache.capacity, 50)
        self.assertIsInstance(config.cache.capacity, int)

    def test_invalid_values_raise_with_path(self):
        self._write({"magnification": 2})
        with self.assertRaises(ValueError) as ctx:
            OverlayConfig.from_yaml(self.path)
        self.assertIn(self.path, str(ctx.exception))

    def test_non_mapping_raises(self):
        self._write([1, 2, 3])
        with self.assertRaises(ValueError):
            OverlayConfig.from_yaml(self.path)

    def test_broken_yaml_raises(self):
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("crosshair: [unclosed\n")
        with self.assertRaises(ValueError):
            OverlayConfig.from_yaml(self.path)
