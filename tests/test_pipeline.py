"""Tests for tile compositing, freeze handling and the error map."""

import io
import unittest
from unittest import mock

import numpy as np
from PIL import Image

from PixelOverlay.config import OverlayConfig
from PixelOverlay.manager import TemplateManager
from PixelOverlay.pipeline import OverlayPipeline

BLUE = (0, 0, 255)
RED = (255, 0, 0)


def _png(arr):
    out = io.BytesIO()
    Image.fromarray(arr).save(out, format="PNG")
    return out.getvalue()


def _decode(data):
    with Image.open(io.BytesIO(data)) as img:
        return np.array(img.convert("RGBA"))


def _live_png(painted=None, size=100):
    arr = np.zeros((size, size, 4), dtype=np.uint8)
    for (x, y), color in (painted or {}).items():
        arr[y, x, :3] = color
        arr[y, x, 3] = 255
    return _png(arr)


def _pixel(color):
    arr = np.zeros((1, 1, 4), dtype=np.uint8)
    arr[..., :3] = color
    arr[..., 3] = 255
    return arr


class _PipelineCase(unittest.TestCase):
    def setUp(self):
        self.config = OverlayConfig(tile_size=100)
        self.manager = TemplateManager(self.config)
        self.progress = []
        self.pipeline = OverlayPipeline(
            self.config, self.manager,
            progress_callback=lambda *args: self.progress.append(args),
        )

    def _add_template(self, color=BLUE, coords=(0, 0, 10, 10)):
        return self.manager.create_template(_pixel(color), "dot", list(coords))


class TestComposite(_PipelineCase):
    def test_tile_without_templates_passes_through(self):
        raw = _live_png()
        self.assertIs(self.pipeline.handle_tile(raw, (0, 0)), raw)
        self.assertTrue(self.pipeline.last_report.passthrough)

    def test_template_on_other_tile_passes_through(self):
        self._add_template(coords=(3, 3, 0, 0))
        raw = _live_png()
        self.assertIs(self.pipeline.handle_tile(raw, (0, 0)), raw)

    def test_unpainted_pixel_is_drawn_with_crosshair(self):
        template = self._add_template()
        out = _decode(self.pipeline.handle_tile(_live_png(), (0, 0)))
        self.assertEqual(out.shape, (300, 300, 4))
        self.assertEqual(out[31, 31].tolist(), [0, 0, 255, 255])
        self.assertEqual(out[31, 30].tolist(), [255, 0, 0, 255])
        self.assertEqual(out[30, 30, 3], 0)
        totals = template.progress.totals()
        self.assertEqual((totals.painted, totals.required), (0, 1))
        self.assertEqual(self.progress, [(template.key, 0, 1)])
        self.assertEqual(self.pipeline.last_report.crosshair_marks, 4)

    def test_template_with_other_magnification_is_skipped(self):
        template = self._add_template()
        template.magnification = 5
        raw = _live_png()
        with self.assertLogs("pixel_overlay.pipeline", level="WARNING"):
            self.assertIs(self.pipeline.handle_tile(raw, (0, 0)), raw)
        self.assertEqual(len(template.progress), 0)

    def test_correct_pixel_has_no_crosshair(self):
        template = self._add_template()
        out = _decode(self.pipeline.handle_tile(_live_png({(10, 10): BLUE}), (0, 0)))
        self.assertEqual(out[31, 30].tolist(), [0, 0, 255, 255])
        self.assertEqual(template.progress.totals().painted, 1)
        self.assertEqual(self.pipeline.last_report.crosshair_marks, 0)

    def test_crosshair_can_be_disabled(self):
        self.config.crosshair.enabled = False
        self._add_template()
        out = _decode(self.pipeline.handle_tile(_live_png(), (0, 0)))
        self.assertEqual(out[31, 30, 3], 0)

    def test_disabled_template_is_skipped(self):
        template = self._add_template()
        self.manager.set_template_enabled(template.key, False)
        raw = _live_png()
        self.assertIs(self.pipeline.handle_tile(raw, (0, 0)), raw)

    def test_undecodable_tile_returns_raw_bytes(self):
        self._add_template()
        with self.assertLogs("pixel_overlay.pipeline", level="ERROR"):
            out = self.pipeline.handle_tile(b"garbage", (0, 0))
        self.assertEqual(out, b"garbage")

    def test_failing_chunk_is_skipped(self):
        template = self._add_template()
        with mock.patch.object(template, "prepared_tile", side_effect=RuntimeError("boom")):
            with self.assertLogs("pixel_overlay.pipeline", level="WARNING"):
                out = self.pipeline.handle_tile(_live_png(), (0, 0))
        self.assertEqual(self.pipeline.last_report.failed_chunks, 1)
        self.assertEqual(_decode(out).shape, (300, 300, 4))

    def test_progress_summary(self):
        template = self._add_template()
        self.pipeline.handle_tile(_live_png(), (0, 0))
        summary = self.pipeline.progress_summary()[template.key]
        self.assertEqual(summary["required"], 1)
        self.assertEqual(summary["colors"]["0,0,255"]["needsCrosshair"], 1)
        self.assertIn("0000,0000,010,010", summary["tiles"])


class TestFreezeAndInvalidation(_PipelineCase):
    def test_frozen_tile_keeps_last_composite(self):
        self._add_template()
        first = self.pipeline.handle_tile(_live_png(), (0, 0))
        self.pipeline.freeze()
        self.assertEqual(self.pipeline.handle_tile(_live_png({(1, 1): RED}), (0, 0)), first)
        self.assertEqual(self.pipeline.stats()["state"], "frozen")
        self.pipeline.resume()
        self.assertNotEqual(self.pipeline.handle_tile(_live_png({(1, 1): RED}), (0, 0)), first)

    def test_deleting_template_purges_its_tiles(self):
        template = self._add_template()
        self.pipeline.handle_tile(_live_png(), (0, 0))
        self.pipeline.handle_tile(_live_png(), (5, 5))
        self.assertEqual(self.pipeline.stats()["cached"], 2)
        self.manager.delete_template(template.key)
        self.assertEqual(self.pipeline.stats()["keys"], ["0005,0005"])

    def test_color_filter_change_purges_cache(self):
        template = self._add_template()
        self.pipeline.handle_tile(_live_png(), (0, 0))
        template.disable_color(BLUE)
        self.assertEqual(self.pipeline.stats()["cached"], 0)

    def test_style_update_invalidates_everything(self):
        self._add_template()
        self.pipeline.handle_tile(_live_png(), (0, 0))
        self.pipeline.update_crosshair_style(border_enabled=True)
        self.assertEqual(self.pipeline.stats()["cached"], 0)
        out = _decode(self.pipeline.handle_tile(_live_png(), (0, 0)))
        self.assertEqual(out[30, 30].tolist(), [0, 100, 255, 200])
        with self.assertRaises(ValueError):
            self.pipeline.update_crosshair_style(no_such_option=1)

    def test_force_refresh_while_frozen(self):
        self._add_template()
        self.pipeline.freeze()
        out = self.pipeline.force_refresh(_live_png(), (0, 0))
        self.assertEqual(_decode(out).shape, (300, 300, 4))
        self.assertEqual(self.pipeline.stats()["cached"], 0)


class TestErrorMap(_PipelineCase):
    def setUp(self):
        super().setUp()
        self.config.progress.error_map.enabled = True

    def test_correct_pixel_is_tinted_green(self):
        self._add_template()
        out = _decode(self.pipeline.handle_tile(_live_png({(10, 10): BLUE}), (0, 0)))
        r, g, b, a = out[30, 30].tolist()
        self.assertEqual(r, 0)
        self.assertGreater(g, 0)
        self.assertLess(b, 255)
        self.assertEqual(a, 255)

    def test_wrong_pixel_is_tinted_red(self):
        self._add_template()
        out = _decode(self.pipeline.handle_tile(_live_png({(10, 10): (0, 255, 0)}), (0, 0)))
        r, g, _, _ = out[30, 30].tolist()
        self.assertGreater(r, 0)
        self.assertLess(g, 255)

    def test_unpainted_only_marks_center(self):
        self.config.progress.error_map.show_unpainted_as_wrong = True
        self.config.crosshair.enabled = False
        self._add_template()
        out = _decode(self.pipeline.handle_tile(_live_png(), (0, 0)))
        self.assertEqual(out[30, 30, 3], 0)
        self.assertGreater(out[31, 31, 0], 0)
