"""Composite live canvas tiles with every enabled template.

`OverlayPipeline` decodes each incoming tile once, magnifies it, draws the
templates that overlap it (with their crosshair highlights), records
progress, optionally paints the error map, and hands the PNG back through
the freeze controller.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import OverlayConfig
from .core.analysis import Classification, classify_tile
from .core.cache import FreezeController, TileId
from .core.crosshair import CrosshairRenderer, CrosshairStyle, enhanced_centers
from .core.raster import (
    TemplateDecodeError,
    TileEncodeError,
    alpha_composite,
    decode_image,
    encode_png,
)
from .core.tiling import magnify, parse_tile_key
from .manager import TemplateManager
from .template import Template

logger = logging.getLogger("pixel_overlay.pipeline")

# Error map colors at 60% opacity.
ERROR_MAP_CORRECT = (0, 128, 0, 153)
ERROR_MAP_WRONG = (128, 0, 0, 153)

ProgressCallback = Callable[[str, int, int], None]


@dataclass
class CompositeReport:
    """What happened during the last compositing pass of one canvas tile."""

    tile: Tuple[int, int] = (0, 0)
    templates: List[str] = field(default_factory=list)
    chunks: int = 0
    failed_chunks: int = 0
    crosshair_marks: int = 0
    crosshair_skipped: int = 0
    passthrough: bool = False


class OverlayPipeline:
    """Tile compositor sitting between the network layer and the renderer.

    Args:
        config: Overlay configuration.
        manager: Template collection to draw. A fresh in-memory manager is
            created when omitted.
        yield_hook: Called between crosshair chunks.
        progress_callback: Called as ``(template_key, painted, required)``
            after each template is analyzed on a tile.
    """

    def __init__(self, config: Optional[OverlayConfig] = None,
                 manager: Optional[TemplateManager] = None,
                 yield_hook: Optional[Callable[[], None]] = None,
                 progress_callback: Optional[ProgressCallback] = None):
        self.config = config or OverlayConfig()
        self.manager = manager or TemplateManager(self.config)
        self.progress_callback = progress_callback
        ch = self.config.crosshair
        self.renderer = CrosshairRenderer(
            CrosshairStyle.from_config(ch),
            max_pixels=ch.max_enhanced_pixels,
            chunk_threshold=ch.chunk_threshold,
            chunk_size=ch.chunk_size,
            yield_hook=yield_hook,
        )
        self.controller = FreezeController(
            self.composite_tile,
            capacity=self.config.cache.capacity,
            frozen=self.config.cache.frozen,
        )
        self.manager.add_invalidation_listener(self.controller.invalidate)
        self.last_report: Optional[CompositeReport] = None

    # Host-facing entry points

    def handle_tile(self, tile_bytes: bytes, tile: TileId) -> bytes:
        """Return the bytes to display for a freshly fetched canvas tile."""
        return self.controller.handle(tile_bytes, tile)

    def force_refresh(self, tile_bytes: bytes, tile: TileId) -> bytes:
        return self.controller.force_refresh(tile_bytes, tile)

    def freeze(self) -> None:
        self.controller.freeze()

    def resume(self) -> None:
        self.controller.resume()

    def stats(self) -> dict:
        return self.controller.stats()

    def update_crosshair_style(self, **changes) -> None:
        """Change crosshair options and drop every overlay built with the old ones."""
        ch = self.config.crosshair
        for name, value in changes.items():
            if not hasattr(ch, name):
                raise ValueError(f"Unknown crosshair option: {name}")
            setattr(ch, name, value)
        self.renderer.style = CrosshairStyle.from_config(ch)
        self.manager.refresh_crosshair_settings()
        self.controller.invalidate()

    # Compositing

    def _report_progress(self, template: Template) -> None:
        if self.progress_callback is None:
            return
        totals = template.progress.totals()
        try:
            self.progress_callback(template.key, totals.painted, totals.required)
        except Exception as e:
            logger.debug("Progress callback failed: %s", e)

    def _draw_chunk(self, canvas: np.ndarray, live: np.ndarray, template: Template,
                    key: str, m: int,
                    report: CompositeReport) -> Tuple[Classification, Tuple[int, int]]:
        _, _, px, py = parse_tile_key(key)
        offset = (px * m, py * m)
        prepared = template.prepared_tile(key)
        low_alpha = self.config.progress.low_alpha_threshold
        classification = classify_tile(prepared.raster, live, offset, m, low_alpha)

        layer = prepared.raster
        if self.config.crosshair.enabled:
            targets = enhanced_centers(
                classification,
                enhance_wrong=self.config.progress.enhance_wrong_colors,
                color_mask=prepared.enhanced_mask,
            )
            result = self.renderer.render(
                prepared.raster, live, offset, classification, m, targets=targets,
            )
            if result.skipped:
                report.crosshair_skipped += 1
            if result.overlay is not None:
                layer = prepared.raster.copy()
                marked = result.overlay[..., 3] > 0
                layer[marked] = result.overlay[marked]
                report.crosshair_marks += result.center_marks + result.corner_marks

        alpha_composite(canvas, layer, *offset)
        template.progress.record(
            key, prepared.raster, live, m, low_alpha, classification=classification,
        )
        return classification, offset

    def _draw_error_map(self, canvas: np.ndarray,
                        marks: Sequence[Tuple[Classification, Tuple[int, int], int]]) -> None:
        em = self.config.progress.error_map
        layer = np.zeros_like(canvas)
        h, w = canvas.shape[:2]
        for classification, (ox, oy), m in marks:
            paint = []
            if em.show_wrong:
                paint.append((classification.wrong, ERROR_MAP_WRONG, True))
                if em.show_unpainted_as_wrong:
                    # Unpainted cells only get their center dot.
                    paint.append((classification.unpainted, ERROR_MAP_WRONG, False))
            if em.show_correct:
                paint.append((classification.correct, ERROR_MAP_CORRECT, True))
            for mask, color, whole_block in paint:
                if whole_block:
                    cells = magnify(mask[..., None], m)[..., 0]
                else:
                    cells = np.zeros((mask.shape[0] * m, mask.shape[1] * m), dtype=bool)
                    cells[m // 2::m, m // 2::m] = mask
                ch = min(cells.shape[0], h - oy)
                cw = min(cells.shape[1], w - ox)
                if ch <= 0 or cw <= 0:
                    continue
                region = layer[oy:oy + ch, ox:ox + cw]
                region[cells[:ch, :cw]] = color
        alpha_composite(canvas, layer, 0, 0)

    def composite_tile(self, tile_bytes: bytes, coords: Sequence[int]) -> bytes:
        """Draw every enabled template overlapping canvas tile ``coords``.

        Returns the raw bytes unchanged when no template overlaps the tile
        or when the tile cannot be decoded or the composite encoded.
        """
        tile_x, tile_y = int(coords[0]), int(coords[1])
        report = CompositeReport(tile=(tile_x, tile_y))
        self.last_report = report

        m = self.config.magnification
        work = []
        for template in self.manager.templates_sorted(enabled_only=True):
            keys = template.tiles_for(tile_x, tile_y)
            if not keys:
                continue
            # The live tile is magnified once, so every chunk must share M.
            if template.magnification != m:
                logger.warning(
                    "Skipping template %s: magnification %d does not match %d",
                    template.key, template.magnification, m,
                )
                continue
            work.append((template, keys))
        if not work:
            report.passthrough = True
            return tile_bytes

        try:
            live_raster = decode_image(tile_bytes)
        except TemplateDecodeError as e:
            logger.error("Cannot decode live tile %d,%d: %s", tile_x, tile_y, e)
            report.passthrough = True
            return tile_bytes

        live = magnify(live_raster.pixels, m)
        canvas = live.copy()
        marks = []

        for template, keys in work:
            report.templates.append(template.key)
            for key in keys:
                report.chunks += 1
                try:
                    classification, offset = self._draw_chunk(
                        canvas, live, template, key, m, report,
                    )
                except Exception as e:
                    report.failed_chunks += 1
                    logger.warning(
                        "Failed to draw template %s on tile %s: %s", template.key, key, e,
                    )
                    continue
                marks.append((classification, offset, m))
            self._report_progress(template)

        if self.config.progress.error_map.enabled and marks:
            try:
                self._draw_error_map(canvas, marks)
            except Exception as e:
                logger.warning("Failed to render error map on tile %d,%d: %s", tile_x, tile_y, e)

        try:
            return encode_png(canvas)
        except TileEncodeError as e:
            logger.error("Cannot encode composite for tile %d,%d: %s", tile_x, tile_y, e)
            report.passthrough = True
            return tile_bytes

    def progress_summary(self) -> Dict[str, dict]:
        """Per-template tile totals and per-color stats, ready for JSON."""
        include_wrong = self.config.progress.include_wrong_in_progress
        summary = {}
        for template in self.manager.templates_sorted():
            totals = template.progress.totals()
            summary[template.key] = {
                "name": template.display_name,
                "painted": totals.painted,
                "required": totals.required,
                "wrong": totals.wrong,
                "tiles": {k: p.to_dict() for k, p in sorted(template.progress.items())},
                "colors": {
                    k: s.to_dict()
                    for k, s in self.manager.calculate_remaining_pixels_by_color(
                        template.key).items()
                },
                "includeWrong": include_wrong,
            }
        return summary
