"""Pixel-progress analysis of template tiles against the live canvas.

Only the center cell of each M x M template block carries a required color.
The live raster handed to this module is the painted canvas tile already
magnified by M, so the same array can be used for drawing, crosshair
placement and classification within one compositing pass.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np

from .colors import LOW_ALPHA_THRESHOLD, SENTINEL_PACKED, pack_rgb, packed_set, unpack_key
from .records import ColorCounts, ColorStats, PixelClass, TileProgress, sum_progress
from .tiling import centers, parse_tile_key, validate_magnification

logger = logging.getLogger("pixel_overlay.analysis")


@dataclass
class Classification:
    """Per-center masks for one template tile; shapes are (rows, cols)."""

    required: np.ndarray
    correct: np.ndarray
    wrong: np.ndarray
    unpainted: np.ndarray
    packed: np.ndarray
    live_painted: np.ndarray

    def class_at(self, row: int, col: int) -> PixelClass:
        if not self.required[row, col]:
            return PixelClass.NOT_REQUIRED
        if self.correct[row, col]:
            return PixelClass.CORRECT
        if self.wrong[row, col]:
            return PixelClass.WRONG
        return PixelClass.UNPAINTED


def live_centers(live: np.ndarray, offset: Tuple[int, int], shape: Tuple[int, int],
                 magnification: int) -> Tuple[np.ndarray, np.ndarray]:
    """Return live RGBA values under each template center and an in-bounds mask.

    Centers outside ``live`` are reported as transparent and out of bounds.
    """
    rows, cols = shape
    c = magnification // 2
    ox, oy = offset
    out = np.zeros((rows, cols, 4), dtype=np.uint8)
    inside = np.zeros((rows, cols), dtype=bool)
    if ox < 0 or oy < 0:
        raise ValueError(f"Template offset must be non-negative, got {offset}")
    window = live[oy + c::magnification, ox + c::magnification][:rows, :cols]
    h, w = window.shape[:2]
    out[:h, :w] = window
    inside[:h, :w] = True
    return out, inside


def classify_tile(template_tile: np.ndarray, live: np.ndarray,
                  offset: Tuple[int, int] = (0, 0),
                  magnification: int = 3,
                  low_alpha: int = LOW_ALPHA_THRESHOLD,
                  disabled: Optional[Iterable] = None) -> Classification:
    """Classify every block center of ``template_tile``.

    Args:
        template_tile: Magnified template chunk, shape (h*M, w*M, 4).
        live: Magnified live canvas tile.
        offset: (x, y) of the chunk within ``live``, i.e. pixel coords * M.
        magnification: Odd block size M.
        low_alpha: Alpha below which a center is transparent and a live
            pixel is unpainted.
        disabled: Optional colors to treat as not required.
    """
    m = validate_magnification(magnification)
    tmpl = centers(template_tile, m)
    shape = tmpl.shape[:2]
    packed = pack_rgb(tmpl)

    required = (tmpl[..., 3] >= low_alpha) & (packed != SENTINEL_PACKED)
    if disabled:
        disabled_packed = packed_set(disabled)
        if disabled_packed.size:
            required &= ~np.isin(packed, disabled_packed)

    live_rgba, inside = live_centers(live, offset, shape, m)
    required &= inside

    live_painted = live_rgba[..., 3] >= low_alpha
    matches = pack_rgb(live_rgba) == packed
    return Classification(
        required=required,
        correct=required & live_painted & matches,
        wrong=required & live_painted & ~matches,
        unpainted=required & ~live_painted,
        packed=packed,
        live_painted=live_painted,
    )


def _per_color(cls: Classification) -> Dict[str, ColorCounts]:
    req_colors = cls.packed[cls.required]
    if req_colors.size == 0:
        return {}
    uniq, inverse = np.unique(req_colors, return_inverse=True)
    required = np.bincount(inverse, minlength=uniq.size)
    correct = cls.correct[cls.required].astype(np.float64)
    wrong_hits = cls.wrong[cls.required].astype(np.float64)
    painted = np.bincount(inverse, weights=correct, minlength=uniq.size)
    wrong = np.bincount(inverse, weights=wrong_hits, minlength=uniq.size)
    return {
        unpack_key(value): ColorCounts(
            required=int(required[i]), painted=int(painted[i]), wrong=int(wrong[i]),
        )
        for i, value in enumerate(uniq)
    }


def analyze_tile(tile_key: str, template_tile: np.ndarray, live: np.ndarray,
                 magnification: int = 3,
                 low_alpha: int = LOW_ALPHA_THRESHOLD,
                 disabled: Optional[Iterable] = None,
                 classification: Optional[Classification] = None) -> TileProgress:
    """Produce the :class:`TileProgress` for one template chunk.

    The chunk offset inside ``live`` is derived from the pixel part of
    ``tile_key``. A precomputed ``classification`` is reused when given.
    """
    if classification is None:
        _, _, px, py = parse_tile_key(tile_key)
        classification = classify_tile(
            template_tile, live, (px * magnification, py * magnification),
            magnification, low_alpha, disabled,
        )
    return TileProgress(
        tile_key=tile_key,
        painted=int(classification.correct.sum()),
        required=int(classification.required.sum()),
        wrong=int(classification.wrong.sum()),
        colors=_per_color(classification),
    )


def estimate_color_stats(palette: Mapping[str, int], totals: TileProgress,
                         include_wrong: bool = False) -> Dict[str, ColorStats]:
    """Attribute coarse totals to colors in proportion to palette counts.

    Only meant for colors that have no exact per-color data.
    """
    stats = {}
    for key, count in palette.items():
        share = count / totals.required if totals.required else 0.0
        painted = int(totals.painted * share + 0.5)
        if include_wrong:
            painted += int(totals.wrong * share + 0.5)
        stats[key] = ColorStats.from_counts(count, painted)
    return stats


class ProgressTracker:
    """Latest :class:`TileProgress` per tile key for one template."""

    def __init__(self):
        self._tiles: Dict[str, TileProgress] = {}

    def __len__(self) -> int:
        return len(self._tiles)

    def __contains__(self, tile_key: str) -> bool:
        return tile_key in self._tiles

    def get(self, tile_key: str) -> Optional[TileProgress]:
        return self._tiles.get(tile_key)

    def items(self):
        return self._tiles.items()

    def record(self, tile_key: str, template_tile: np.ndarray, live: np.ndarray,
               magnification: int = 3, low_alpha: int = LOW_ALPHA_THRESHOLD,
               disabled: Optional[Iterable] = None,
               classification: Optional[Classification] = None) -> TileProgress:
        """Analyze one tile and store the result.

        A failing tile is logged and recorded as zero progress so stale
        numbers from an earlier pass do not linger.
        """
        try:
            progress = analyze_tile(
                tile_key, template_tile, live, magnification, low_alpha,
                disabled, classification,
            )
        except Exception as e:
            logger.warning("Progress analysis failed for tile %s: %s", tile_key, e)
            progress = TileProgress(tile_key=tile_key)
        self._tiles[tile_key] = progress
        return progress

    def totals(self) -> TileProgress:
        return sum_progress(self._tiles.values())

    def color_totals(self) -> Dict[str, ColorCounts]:
        return self.totals().colors

    def color_stats(self, include_wrong: bool = False) -> Dict[str, ColorStats]:
        return {
            key: ColorStats.from_color_counts(counts, include_wrong)
            for key, counts in sorted(self.color_totals().items())
        }

    def clear(self) -> None:
        self._tiles.clear()

    def discard(self, prefix: str) -> int:
        """Drop every record whose tile key starts with ``prefix``."""
        stale = [k for k in self._tiles if k.startswith(prefix)]
        for key in stale:
            del self._tiles[key]
        return len(stale)
