"""Tests for the template manager."""

import os
import shutil
import tempfile
import unittest

import numpy as np

from PixelOverlay.config import OverlayConfig
from PixelOverlay.core.records import ColorStats
from PixelOverlay.core.storage import StorageError, TemplateStore
from PixelOverlay.core.tiling import magnify
from PixelOverlay.manager import (
    ENCODING_BASE,
    TemplateManager,
    TemplateNotFoundError,
    number_to_encoded,
)

RED = (255, 0, 0)
BLUE = (0, 0, 255)


def _image(width, height, color):
    arr = np.zeros((height, width, 4), dtype=np.uint8)
    arr[..., :3] = color
    arr[..., 3] = 255
    return arr


def _config(tmpdir=None):
    config = OverlayConfig(tile_size=100)
    if tmpdir:
        config.storage.primary_path = os.path.join(tmpdir, "templates.json")
        config.storage.secondary_path = os.path.join(tmpdir, "templates.backup.json")
    return config


class TestNumberToEncoded(unittest.TestCase):
    def test_base_digits(self):
        self.assertEqual(len(ENCODING_BASE), 92)
        self.assertEqual(number_to_encoded(0), "!")
        self.assertEqual(number_to_encoded(1), "#")
        self.assertEqual(number_to_encoded(92), "#!")
        self.assertEqual(number_to_encoded(93), "##")
        self.assertEqual(number_to_encoded(5, "0123456789"), "5")
        with self.assertRaises(ValueError):
            number_to_encoded(-1)


class TestCreateAndDelete(unittest.TestCase):
    def setUp(self):
        self.manager = TemplateManager(_config())

    def test_sort_ids_increase(self):
        a = self.manager.create_template(_image(2, 2, RED), "a", [0, 0, 0, 0])
        b = self.manager.create_template(_image(3, 3, RED), "b", [0, 0, 10, 10])
        self.assertEqual((a.key, b.key), ("0 !", "1 !"))
        self.assertEqual([t.display_name for t in self.manager.templates_sorted()], ["a", "b"])

    def test_author_id_comes_from_user_id(self):
        self.manager.config.user_id = 93
        template = self.manager.create_template(_image(1, 1, RED), "a", [0, 0, 0, 0])
        self.assertEqual(template.key, "0 ##")

    def test_duplicate_name_and_size_replaces_in_place(self):
        self.manager.create_template(_image(2, 2, RED), "art", [0, 0, 0, 0])
        self.manager.create_template(_image(1, 1, RED), "other", [0, 0, 50, 50])
        replaced = self.manager.create_template(_image(2, 2, BLUE), "art", [0, 0, 5, 5])
        self.assertEqual(replaced.sort_id, 0)
        self.assertEqual(len(self.manager.templates), 2)
        self.assertEqual(self.manager.get_template("0 !").coords, [0, 0, 5, 5])

    def test_same_name_different_size_is_a_new_template(self):
        self.manager.create_template(_image(2, 2, RED), "art", [0, 0, 0, 0])
        second = self.manager.create_template(_image(3, 2, RED), "art", [0, 0, 0, 0])
        self.assertEqual(second.sort_id, 1)

    def test_delete_unknown_raises(self):
        with self.assertRaises(TemplateNotFoundError):
            self.manager.delete_template("7 !")

    def test_delete_notifies_listeners_with_prefixes(self):
        seen = []
        self.manager.add_invalidation_listener(seen.append)
        template = self.manager.create_template(_image(2, 2, RED), "a", [3, 4, 0, 0])
        seen.clear()
        self.manager.delete_template(template.key)
        self.assertEqual(seen, [["0003,0004"]])
        self.assertEqual(self.manager.templates, {})

    def test_enable_toggle(self):
        template = self.manager.create_template(_image(1, 1, RED), "a", [0, 0, 0, 0])
        self.manager.set_template_enabled(template.key, False)
        self.assertFalse(self.manager.is_template_enabled(template.key))
        self.assertEqual(self.manager.templates_sorted(enabled_only=True), [])

    def test_delete_all(self):
        self.manager.create_template(_image(1, 1, RED), "a", [0, 0, 0, 0])
        self.manager.create_template(_image(2, 1, RED), "b", [0, 0, 0, 0])
        self.assertEqual(self.manager.delete_all(), 2)
        self.assertEqual(self.manager.templates_sorted(), [])


class TestPersistence(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.config = _config(self.tmpdir)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _manager(self):
        return TemplateManager(self.config, TemplateStore.from_config(self.config.storage))

    def test_saved_templates_reload(self):
        manager = self._manager()
        manager.create_template(_image(3, 2, RED), "art", [1, 1, 98, 0])
        manager.set_disabled_colors("0 !", [BLUE])

        restored = self._manager()
        loaded = restored.load()
        self.assertEqual([t.key for t in loaded], ["0 !"])
        template = restored.get_template("0 !")
        self.assertEqual(template.display_name, "art")
        self.assertEqual(template.prefixes(), ["0001,0001", "0002,0001"])
        self.assertTrue(template.is_color_disabled(BLUE))
        self.assertEqual(template.pixel_count, 6)

    def test_export_record_fields(self):
        manager = self._manager()
        manager.create_template(_image(2, 2, RED), "art", [0, 0, 0, 0])
        record = manager.export_record()
        self.assertEqual(record["whoami"], "PixelOverlay")
        self.assertEqual(record["templateCount"], 1)
        self.assertEqual(record["totalPixels"], 4)
        self.assertEqual(record["schemaVersion"], "2.1.0")
        self.assertIn("0 !", record["templates"])

    def test_import_ignores_foreign_records(self):
        manager = self._manager()
        with self.assertLogs("pixel_overlay.manager", level="WARNING"):
            self.assertEqual(manager.import_record({"whoami": "Other", "templates": {}}), [])

    def test_import_skips_malformed_entries(self):
        manager = self._manager()
        record = {"whoami": "PixelOverlay", "templates": {"bad key": {"coords": [0, 0, 0, 0]}}}
        with self.assertLogs("pixel_overlay.manager", level="WARNING"):
            self.assertEqual(manager.import_record(record), [])

    def test_load_without_store_is_empty(self):
        self.assertEqual(TemplateManager(self.config).load(), [])
        self.assertIsNone(TemplateManager(self.config).save())

    def test_storage_failure_propagates(self):
        os.makedirs(self.config.storage.primary_path)
        os.makedirs(self.config.storage.secondary_path)
        manager = self._manager()
        with self.assertRaises(StorageError):
            manager.create_template(_image(1, 1, RED), "a", [0, 0, 0, 0])


class TestRemainingPixels(unittest.TestCase):
    def setUp(self):
        self.manager = TemplateManager(_config())
        self.template = self.manager.create_template(_image(10, 1, RED), "line", [0, 0, 0, 0])

    def _record_live(self, painted):
        live = np.zeros((100, 100, 4), dtype=np.uint8)
        for x, color in painted.items():
            live[0, x, :3] = color
            live[0, x, 3] = 255
        key = "0000,0000,000,000"
        self.template.progress.record(
            key, self.template.prepared_tile(key).raster, magnify(live, 3),
        )

    def test_exact_counts_from_analysis(self):
        self._record_live({0: RED, 1: RED, 2: BLUE})
        stats = self.manager.calculate_remaining_pixels_by_color()
        self.assertEqual(stats["255,0,0"], ColorStats(10, 2, 8, 20))

    def test_palette_without_analysis(self):
        stats = self.manager.calculate_remaining_pixels_by_color(self.template.key)
        self.assertEqual(stats, {"255,0,0": ColorStats(10, 0, 10, 0)})

    def test_disabled_color_reports_zero(self):
        self._record_live({0: RED})
        self.manager.set_disabled_colors(self.template.key, [RED])
        stats = self.manager.calculate_remaining_pixels_by_color()
        self.assertEqual(stats["255,0,0"], ColorStats())
        self.assertEqual(self.manager.build_color_palette(self.template.key), {})

    def test_disabling_color_drops_its_tile_progress(self):
        self._record_live({})
        self.assertEqual(self.manager.tile_progress().required, 10)
        self.manager.set_disabled_colors(self.template.key, [RED])
        stats = self.manager.calculate_remaining_pixels_by_color()
        self.assertEqual(sum(s.total_required for s in stats.values()), 0)
        self.assertEqual(self.manager.tile_progress().required, 0)
        self.assertEqual(len(self.template.progress), 0)

    def test_enhanced_change_keeps_tile_progress(self):
        self._record_live({0: RED})
        self.manager.set_enhanced_colors(self.template.key, [RED])
        progress = self.manager.tile_progress()
        self.assertEqual((progress.painted, progress.required), (1, 10))

    def test_tile_progress_sums_templates(self):
        self._record_live({0: RED})
        progress = self.manager.tile_progress()
        self.assertEqual((progress.painted, progress.required), (1, 10))


def test_stored_manager_round_trip(stored_manager, store_config):
    stored_manager.create_template(_image(2, 2, BLUE), "art", [0, 0, 0, 0])
    assert stored_manager.store.last_backend == "primary"
    fresh = TemplateManager(store_config, TemplateStore.from_config(store_config.storage))
    assert [t.display_name for t in fresh.load()] == ["art"]
