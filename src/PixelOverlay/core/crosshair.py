"""Crosshair highlight overlay for not-yet-correct enhanced pixels."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage

from .analysis import Classification
from .colors import pack_rgb, packed_set

logger = logging.getLogger("pixel_overlay.crosshair")

DEFAULT_COLOR = (255, 0, 0)
DEFAULT_ALPHA = 255
CORNER_COLOR = (0, 100, 255)
CORNER_ALPHA = 200
MIN_RADIUS = 12
MAX_RADIUS = 32
DEFAULT_RADIUS = 16
MAX_ENHANCED_PIXELS = 23000
CHUNK_THRESHOLD = 12000
CHUNK_SIZE = 2000


def clamp_radius(radius: int) -> int:
    return max(MIN_RADIUS, min(MAX_RADIUS, int(radius)))


@dataclass
class CrosshairStyle:
    color: Tuple[int, int, int] = DEFAULT_COLOR
    alpha: int = DEFAULT_ALPHA
    border_enabled: bool = False
    enhanced_size: bool = False
    radius: int = DEFAULT_RADIUS
    corner_color: Tuple[int, int, int] = CORNER_COLOR
    corner_alpha: int = CORNER_ALPHA

    @classmethod
    def from_config(cls, cfg) -> "CrosshairStyle":
        return cls(
            color=tuple(cfg.color),
            alpha=cfg.alpha,
            border_enabled=cfg.border_enabled,
            enhanced_size=cfg.enhanced_size,
            radius=clamp_radius(cfg.radius),
            corner_color=tuple(cfg.corner_color),
            corner_alpha=cfg.corner_alpha,
        )

    @property
    def arm_length(self) -> int:
        return clamp_radius(self.radius) if self.enhanced_size else 1


@dataclass
class CrosshairResult:
    overlay: Optional[np.ndarray]
    enhanced_count: int = 0
    center_marks: int = 0
    corner_marks: int = 0
    chunks: int = 0
    skipped: bool = False


def _plus_structure(arm: int) -> np.ndarray:
    size = 2 * arm + 1
    st = np.zeros((size, size), dtype=bool)
    st[arm, :] = True
    st[:, arm] = True
    st[arm, arm] = False
    return st


_DIAGONAL = np.array([[1, 0, 1], [0, 0, 0], [1, 0, 1]], dtype=bool)


def enhanced_color_mask(tile: np.ndarray, magnification: int,
                        enhanced: Iterable = ()) -> np.ndarray:
    """Block centers whose color is enhanced; all of them for an empty set."""
    center = tile[magnification // 2::magnification, magnification // 2::magnification]
    enhanced_packed = packed_set(enhanced)
    if not enhanced_packed.size:
        return np.ones(center.shape[:2], dtype=bool)
    return np.isin(pack_rgb(center), enhanced_packed)


def enhanced_centers(classification: Classification,
                     enhanced: Iterable = (),
                     enhance_wrong: bool = False,
                     color_mask: Optional[np.ndarray] = None) -> np.ndarray:
    """Mask of block centers that still need a crosshair.

    An empty ``enhanced`` set means every color is enhanced. A precomputed
    ``color_mask`` replaces the color lookup.
    """
    mask = classification.required & ~classification.correct
    if color_mask is not None:
        mask &= color_mask
    else:
        enhanced_packed = packed_set(enhanced)
        if enhanced_packed.size:
            mask &= np.isin(classification.packed, enhanced_packed)
    if enhance_wrong:
        mask |= classification.wrong
    return mask


def live_painted_cells(live: np.ndarray, offset: Tuple[int, int],
                       shape: Tuple[int, int]) -> np.ndarray:
    """Cells of a template chunk whose live position carries any paint."""
    h, w = shape
    ox, oy = offset
    painted = np.zeros((h, w), dtype=bool)
    window = live[oy:oy + h, ox:ox + w, 3]
    painted[:window.shape[0], :window.shape[1]] = window > 0
    return painted


class CrosshairRenderer:
    """Builds the highlight overlay for one template chunk.

    Args:
        style: Colors and arm options.
        max_pixels: Above this many enhanced centers the overlay is skipped.
        chunk_threshold: Above this many, centers are processed in chunks.
        chunk_size: Centers per chunk.
        yield_hook: Called between chunks so the host can stay responsive.
    """

    def __init__(self, style: Optional[CrosshairStyle] = None,
                 max_pixels: int = MAX_ENHANCED_PIXELS,
                 chunk_threshold: int = CHUNK_THRESHOLD,
                 chunk_size: int = CHUNK_SIZE,
                 yield_hook: Optional[Callable[[], None]] = None):
        self.style = style or CrosshairStyle()
        self.max_pixels = max_pixels
        self.chunk_threshold = chunk_threshold
        self.chunk_size = max(1, chunk_size)
        self.yield_hook = yield_hook if yield_hook is not None else (lambda: time.sleep(0))

    def _chunks(self, coords: np.ndarray) -> Sequence[np.ndarray]:
        if len(coords) > self.chunk_threshold:
            return [coords[i:i + self.chunk_size]
                    for i in range(0, len(coords), self.chunk_size)]
        return [coords]

    @staticmethod
    def _dilate_window(coords: np.ndarray, shape: Tuple[int, int], structure: np.ndarray,
                       reach: int) -> Tuple[np.ndarray, Tuple[slice, slice]]:
        h, w = shape
        y0 = max(0, int(coords[:, 0].min()) - reach)
        y1 = min(h, int(coords[:, 0].max()) + reach + 1)
        x0 = max(0, int(coords[:, 1].min()) - reach)
        x1 = min(w, int(coords[:, 1].max()) + reach + 1)
        seed = np.zeros((y1 - y0, x1 - x0), dtype=bool)
        seed[coords[:, 0] - y0, coords[:, 1] - x0] = True
        grown = ndimage.binary_dilation(seed, structure=structure)
        return grown, (slice(y0, y1), slice(x0, x1))

    def render(self, template_tile: np.ndarray, live: np.ndarray,
               offset: Tuple[int, int], classification: Classification,
               magnification: int = 3, enhanced: Iterable = (),
               enhance_wrong: bool = False,
               targets: Optional[np.ndarray] = None) -> CrosshairResult:
        """Return the overlay for ``template_tile`` placed at ``offset`` in ``live``.

        ``targets`` overrides the enhanced-center mask (same shape as the
        classification masks); it is used by callers that cache the mask.
        """
        if targets is None:
            targets = enhanced_centers(classification, enhanced, enhance_wrong)
        count = int(targets.sum())
        result = CrosshairResult(overlay=None, enhanced_count=count)
        if count == 0:
            return result
        if count > self.max_pixels:
            logger.info(
                "Skipping crosshair overlay: %d enhanced pixels exceeds %d",
                count, self.max_pixels,
            )
            result.skipped = True
            return result

        shape = template_tile.shape[:2]
        c = magnification // 2
        coords = np.argwhere(targets) * magnification + c

        eligible = (template_tile[..., 3] == 0) & ~live_painted_cells(live, offset, shape)
        orth = np.zeros(shape, dtype=bool)
        corner = np.zeros(shape, dtype=bool)
        arm = self.style.arm_length
        plus = _plus_structure(arm)

        chunks = self._chunks(coords)
        for idx, chunk in enumerate(chunks):
            grown, window = self._dilate_window(chunk, shape, plus, arm)
            orth[window] |= grown
            if self.style.border_enabled:
                grown, window = self._dilate_window(chunk, shape, _DIAGONAL, 1)
                corner[window] |= grown
            if len(chunks) > 1 and idx < len(chunks) - 1:
                logger.debug("Crosshair chunk %d/%d done", idx + 1, len(chunks))
                self.yield_hook()

        orth &= eligible
        corner &= eligible & ~orth

        overlay = np.zeros(shape + (4,), dtype=np.uint8)
        overlay[orth] = (*self.style.color, self.style.alpha)
        overlay[corner] = (*self.style.corner_color, self.style.corner_alpha)

        result.overlay = overlay
        result.center_marks = int(orth.sum())
        result.corner_marks = int(corner.sum())
        result.chunks = len(chunks)
        return result
