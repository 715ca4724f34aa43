"""Tests for color keys and the per-template color filter."""

import unittest

import numpy as np

from PixelOverlay.core.colors import (
    SENTINEL_KEY,
    SENTINEL_PACKED,
    SENTINEL_RGB,
    ColorFilter,
    color_key,
    pack_key,
    pack_rgb,
    packed_set,
    parse_color_key,
    unpack_key,
)


class TestColorKeys(unittest.TestCase):
    def test_tuple_and_string_forms_share_a_key(self):
        self.assertEqual(color_key((255, 0, 0)), "255,0,0")
        self.assertEqual(color_key([255, 0, 0, 128]), "255,0,0")
        self.assertEqual(color_key(" 255, 0 ,0 "), "255,0,0")

    def test_invalid_colors_are_rejected(self):
        for bad in ((1, 2), (256, 0, 0), (-1, 0, 0), "a,b,c", "1,2,3,4,5"):
            with self.assertRaises(ValueError):
                color_key(bad)

    def test_parse_color_key(self):
        self.assertEqual(parse_color_key("0,100,255"), (0, 100, 255))

    def test_sentinel_constants_agree(self):
        self.assertEqual(color_key(SENTINEL_RGB), SENTINEL_KEY)
        self.assertEqual(pack_key(SENTINEL_KEY), SENTINEL_PACKED)
        self.assertEqual(unpack_key(SENTINEL_PACKED), SENTINEL_KEY)

    def test_pack_rgb_ignores_alpha(self):
        arr = np.array([[[1, 2, 3, 0], [1, 2, 3, 255]]], dtype=np.uint8)
        packed = pack_rgb(arr)
        self.assertEqual(packed.shape, (1, 2))
        self.assertEqual(int(packed[0, 0]), int(packed[0, 1]))
        self.assertEqual(unpack_key(packed[0, 0]), "1,2,3")

    def test_packed_set_deduplicates(self):
        values = packed_set([(1, 2, 3), "1,2,3", (0, 0, 0)])
        self.assertEqual(values.tolist(), sorted([pack_key("1,2,3"), 0]))


class TestColorFilter(unittest.TestCase):
    def test_disable_twice_emits_one_invalidation(self):
        filt = ColorFilter()
        tokens = []
        filt.subscribe(tokens.append)
        filt.disable((255, 0, 0))
        filt.disable("255,0,0")
        self.assertEqual(tokens, [1])
        self.assertTrue(filt.is_disabled([255, 0, 0, 255]))
        self.assertEqual(filt.get_disabled(), ["255,0,0"])

    def test_enable_unknown_color_is_a_no_op(self):
        filt = ColorFilter()
        self.assertEqual(filt.enable((1, 1, 1)), 0)
        self.assertEqual(filt.generation, 0)

    def test_set_disabled_replaces_and_invalidates(self):
        filt = ColorFilter(disabled=[(1, 1, 1)])
        token = filt.set_disabled([(2, 2, 2), (3, 3, 3)])
        self.assertEqual(token, 1)
        self.assertFalse(filt.is_disabled((1, 1, 1)))
        self.assertEqual(filt.get_disabled(), ["2,2,2", "3,3,3"])

    def test_enhanced_set_is_independent(self):
        filt = ColorFilter()
        filt.enable_enhanced((0, 0, 255))
        self.assertTrue(filt.is_enhanced("0,0,255"))
        self.assertFalse(filt.is_disabled("0,0,255"))
        filt.disable_enhanced((0, 0, 255))
        self.assertEqual(filt.get_enhanced(), [])
        self.assertEqual(filt.generation, 2)

    def test_unsubscribe_stops_notifications(self):
        filt = ColorFilter()
        tokens = []
        filt.subscribe(tokens.append)
        filt.unsubscribe(tokens.append)
        filt.unsubscribe(tokens.append)
        filt.disable((9, 9, 9))
        self.assertEqual(tokens, [])
