"""Template model: tiles, color filters and progress for one uploaded design."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from .core.analysis import ProgressTracker
from .core.colors import ColorFilter, ColorLike, pack_rgb, unpack_key
from .core.crosshair import enhanced_color_mask
from .core.raster import ImageSource, TemplateDecodeError, decode_image, decode_payload
from .core.records import ColorCounts
from .core.tiling import (
    DEFAULT_MAGNIFICATION,
    DEFAULT_TILE_SIZE,
    GeneratedTiles,
    apply_color_filter,
    centers,
    count_opaque_centers,
    generate_tiles,
    parse_tile_key,
    required_mask,
    tile_prefix,
    validate_magnification,
)

logger = logging.getLogger("pixel_overlay.template")

PrefixListener = Callable[[Optional[List[str]]], None]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def split_template_key(key: str):
    """Split a ``"<sortID> <authorID>"`` key into its parts."""
    sort_part, _, author = key.partition(" ")
    try:
        sort_id = int(sort_part)
    except ValueError as e:
        raise ValueError(f"Template key must start with an integer sort ID: {key!r}") from e
    return sort_id, author


def parse_coords(value) -> List[int]:
    """Accept ``[tx, ty, px, py]`` or the older ``"tx, ty, px, py"`` string form."""
    if isinstance(value, str):
        value = [part for part in value.replace(" ", "").split(",") if part]
    coords = [int(v) for v in value]
    if len(coords) != 4:
        raise ValueError(f"Coords must have four components, got {value!r}")
    return coords


@dataclass
class PreparedTile:
    """Tile raster with disabled colors hidden plus its enhanced-color mask."""

    raster: np.ndarray
    enhanced_mask: np.ndarray
    generation: int


class Template:
    """One template placed on the canvas.

    Tile rasters hold the colors that were enabled when they were generated.
    Later filter changes are applied to copies held in a prepared-tile cache
    that is cleared whenever the color filter emits an invalidation.
    """

    def __init__(self, display_name: str = "My template", sort_id: int = 0,
                 author_id: str = "", coords: Sequence[int] = (0, 0, 0, 0),
                 tile_size: int = DEFAULT_TILE_SIZE,
                 magnification: int = DEFAULT_MAGNIFICATION,
                 pixel_count: int = 0, enabled: bool = True,
                 disabled_colors: Iterable[ColorLike] = (),
                 enhanced_colors: Iterable[ColorLike] = (),
                 created_at: Optional[str] = None):
        if len(coords) != 4:
            raise ValueError(f"Coords must be [tileX, tileY, pixelX, pixelY], got {coords!r}")
        self.display_name = display_name
        self.sort_id = int(sort_id)
        self.author_id = author_id
        self.coords = [int(c) for c in coords]
        self.tile_size = int(tile_size)
        self.magnification = validate_magnification(magnification)
        self.pixel_count = int(pixel_count)
        self.enabled = bool(enabled)
        self.created_at = created_at or utc_now()

        self.tiles: Dict[str, np.ndarray] = {}
        self.payloads: Dict[str, str] = {}
        self._by_prefix: Dict[str, List[str]] = {}
        self._prepared: Dict[str, PreparedTile] = {}
        self._listeners: List[PrefixListener] = []

        self.progress = ProgressTracker()
        self.filters = ColorFilter(disabled_colors, enhanced_colors)
        self._analyzed_disabled = self.filters.disabled
        self.filters.subscribe(self._on_filter_change)

    def __repr__(self) -> str:
        return (
            f"Template(key={self.key!r}, name={self.display_name!r}, "
            f"tiles={len(self.tiles)}, pixels={self.pixel_count})"
        )

    @property
    def key(self) -> str:
        return f"{self.sort_id} {self.author_id}"

    # Tiles

    def _set_tiles(self, tiles: Dict[str, np.ndarray], payloads: Dict[str, str]) -> None:
        self.tiles = tiles
        self.payloads = payloads
        self._by_prefix = {}
        for key in sorted(tiles):
            tx, ty, _, _ = parse_tile_key(key)
            self._by_prefix.setdefault(tile_prefix(tx, ty), []).append(key)
        self._prepared.clear()
        self.progress.clear()

    def create_tiles(self, source: ImageSource) -> GeneratedTiles:
        """Decode ``source`` and regenerate every tile from it.

        Raises:
            TemplateDecodeError: if neither decoder can read ``source``.
        """
        raster = decode_image(source)
        generated = generate_tiles(
            raster, self.coords, self.filters.disabled,
            self.tile_size, self.magnification,
        )
        self._set_tiles(generated.tiles, generated.payloads)
        self.pixel_count = generated.pixel_count
        logger.info(
            "Template '%s' covers %d tiles (%d pixels)",
            self.display_name, len(self.tiles), self.pixel_count,
        )
        return generated

    def apply_color_filter_to_existing_tiles(self) -> None:
        """Hide disabled colors directly in the stored tile rasters.

        Stored payloads are left untouched, so the hidden pixels come back
        when the template is reloaded.
        """
        apply_color_filter(self.tiles, self.filters.disabled, self.magnification)
        self._on_filter_change(self.filters.generation)

    def prefixes(self) -> List[str]:
        return sorted(self._by_prefix)

    def tiles_for(self, tile_x: int, tile_y: int) -> List[str]:
        """Keys of the chunks of this template that land on canvas tile (x, y)."""
        return list(self._by_prefix.get(tile_prefix(tile_x, tile_y), ()))

    def prepared_tile(self, key: str) -> PreparedTile:
        prepared = self._prepared.get(key)
        if prepared is not None and prepared.generation == self.filters.generation:
            return prepared
        raster = self.tiles[key].copy()
        apply_color_filter({key: raster}, self.filters.disabled, self.magnification)
        prepared = PreparedTile(
            raster=raster,
            enhanced_mask=enhanced_color_mask(raster, self.magnification, self.filters.enhanced),
            generation=self.filters.generation,
        )
        self._prepared[key] = prepared
        return prepared

    def invalidate_enhanced_cache(self) -> int:
        """Drop prepared tiles after a crosshair style change."""
        return self.filters.invalidate()

    # Palette

    def color_palette(self, include_disabled: bool = False) -> Dict[str, int]:
        """Count required center pixels per color across every tile."""
        totals: Dict[int, int] = {}
        disabled = None if include_disabled else self.filters.disabled
        for tile in self.tiles.values():
            mask = required_mask(tile, self.magnification, disabled=disabled)
            if not mask.any():
                continue
            values, counts = np.unique(pack_rgb(centers(tile, self.magnification))[mask],
                                       return_counts=True)
            for value, count in zip(values, counts):
                totals[int(value)] = totals.get(int(value), 0) + int(count)
        return {unpack_key(v): totals[v] for v in sorted(totals)}

    # Color filter facade

    def disable_color(self, color: ColorLike) -> int:
        return self.filters.disable(color)

    def enable_color(self, color: ColorLike) -> int:
        return self.filters.enable(color)

    def is_color_disabled(self, color: ColorLike) -> bool:
        return self.filters.is_disabled(color)

    def enable_enhanced(self, color: ColorLike) -> int:
        return self.filters.enable_enhanced(color)

    def disable_enhanced(self, color: ColorLike) -> int:
        return self.filters.disable_enhanced(color)

    def is_color_enhanced(self, color: ColorLike) -> bool:
        return self.filters.is_enhanced(color)

    def subscribe(self, listener: PrefixListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def _on_filter_change(self, generation: int) -> None:
        self._prepared.clear()
        # Records counted the old disabled set; the next pass rebuilds them.
        if self.filters.disabled != self._analyzed_disabled:
            self._analyzed_disabled = self.filters.disabled
            self.progress.clear()
        prefixes = self.prefixes()
        for listener in list(self._listeners):
            listener(prefixes)

    def color_counts(self) -> Dict[str, ColorCounts]:
        return self.progress.color_totals()

    # Persistence

    def to_record(self) -> dict:
        return {
            "name": self.display_name,
            "coords": list(self.coords),
            "createdAt": self.created_at,
            "pixelCount": self.pixel_count,
            "enabled": self.enabled,
            "disabledColors": self.filters.get_disabled(),
            "enhancedColors": self.filters.get_enhanced(),
            "tiles": {k: self.payloads[k] for k in sorted(self.payloads)},
        }

    @classmethod
    def from_record(cls, key: str, entry: dict,
                    tile_size: int = DEFAULT_TILE_SIZE,
                    magnification: int = DEFAULT_MAGNIFICATION) -> "Template":
        """Rebuild a template from its persisted entry.

        Tiles whose payload cannot be decoded are skipped. The pixel count is
        recomputed from the opaque center cells of the decoded tiles.
        """
        sort_id, author_id = split_template_key(key)
        template = cls(
            display_name=entry.get("name", "My template"),
            sort_id=sort_id,
            author_id=author_id,
            coords=parse_coords(entry.get("coords", (0, 0, 0, 0))),
            tile_size=tile_size,
            magnification=magnification,
            enabled=entry.get("enabled", True),
            disabled_colors=entry.get("disabledColors") or (),
            enhanced_colors=entry.get("enhancedColors") or (),
            created_at=entry.get("createdAt"),
        )
        tiles: Dict[str, np.ndarray] = {}
        payloads: Dict[str, str] = {}
        for tile_key, payload in (entry.get("tiles") or {}).items():
            try:
                parse_tile_key(tile_key)
                tiles[tile_key] = decode_payload(payload).pixels.copy()
            except (TemplateDecodeError, ValueError, TypeError, AttributeError) as e:
                logger.warning("Skipping tile %s of template %s: %s", tile_key, key, e)
                continue
            payloads[tile_key] = payload
        template._set_tiles(tiles, payloads)
        template.pixel_count = count_opaque_centers(tiles, template.magnification)
        stored = entry.get("pixelCount")
        if stored is not None and stored != template.pixel_count:
            logger.debug(
                "Template %s stored pixelCount %s, recounted %d",
                key, stored, template.pixel_count,
            )
        return template
