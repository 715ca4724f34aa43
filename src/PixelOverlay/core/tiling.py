"""Tile generation: split a template raster into magnified, grid-aligned tiles."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from .colors import LOW_ALPHA_THRESHOLD, SENTINEL_PACKED, pack_rgb, packed_set
from .raster import Raster, TileEncodeError, encode_payload

logger = logging.getLogger("pixel_overlay.tiling")

DEFAULT_TILE_SIZE = 1000
DEFAULT_MAGNIFICATION = 3

# Sentinel blocks render as a sparse checkerboard of translucent black.
SENTINEL_CHECKER_ALPHA = 32

Coords = Tuple[int, int, int, int]


class TileBand(NamedTuple):
    """One tile-aligned rectangle of the source raster."""

    src_x: int
    src_y: int
    width: int
    height: int
    pixel_x: int
    pixel_y: int
    tile_x: int
    tile_y: int


@dataclass
class GeneratedTiles:
    """Result of :func:`generate_tiles`."""

    tiles: Dict[str, np.ndarray] = field(default_factory=dict)
    payloads: Dict[str, str] = field(default_factory=dict)
    pixel_count: int = 0
    width: int = 0
    height: int = 0


def validate_magnification(magnification: int) -> int:
    m = int(magnification)
    if m < 1 or m % 2 == 0:
        raise ValueError(f"Magnification must be an odd integer >= 1, got {magnification}")
    return m


def center_offset(magnification: int) -> int:
    return validate_magnification(magnification) // 2


def format_tile_key(tile_x: int, tile_y: int, pixel_x: int, pixel_y: int) -> str:
    """Return the zero-padded ``"TTTT,TTTT,PPP,PPP"`` tile key."""
    return "%04d,%04d,%03d,%03d" % (tile_x, tile_y, pixel_x, pixel_y)


def parse_tile_key(key: str) -> Tuple[int, int, int, int]:
    parts = key.split(",")
    if len(parts) != 4:
        raise ValueError(f"Tile key must have four components, got {key!r}")
    tx, ty, px, py = (int(p) for p in parts)
    return tx, ty, px, py


def tile_prefix(tile_x: int, tile_y: int) -> str:
    """Return the ``"TTTT,TTTT"`` prefix shared by every chunk on one canvas tile."""
    return "%04d,%04d" % (tile_x, tile_y)


def iter_tile_bands(width: int, height: int, coords: Sequence[int],
                    tile_size: int = DEFAULT_TILE_SIZE) -> Iterator[TileBand]:
    """Yield the tile-aligned bands covering a ``width`` x ``height`` source.

    Rows are walked first (vertical bands), then columns within each row.
    Each band ends at the next tile boundary or at the edge of the source.
    """
    tile_x0, tile_y0, pixel_x0, pixel_y0 = (int(c) for c in coords)
    if tile_size <= 0:
        raise ValueError(f"Tile size must be positive, got {tile_size}")

    src_y = 0
    pixel_y = pixel_y0
    while src_y < height:
        draw_h = min(tile_size - (pixel_y % tile_size), height - src_y)
        src_x = 0
        pixel_x = pixel_x0
        while src_x < width:
            draw_w = min(tile_size - (pixel_x % tile_size), width - src_x)
            yield TileBand(
                src_x=src_x,
                src_y=src_y,
                width=draw_w,
                height=draw_h,
                pixel_x=pixel_x % tile_size,
                pixel_y=pixel_y % tile_size,
                tile_x=tile_x0 + pixel_x // tile_size,
                tile_y=tile_y0 + pixel_y // tile_size,
            )
            src_x += draw_w
            pixel_x += draw_w
        src_y += draw_h
        pixel_y += draw_h


def magnify(arr: np.ndarray, magnification: int) -> np.ndarray:
    """Nearest-neighbor upscale of an (H, W, C) array by an integer factor."""
    if magnification == 1:
        return arr
    return np.repeat(np.repeat(arr, magnification, axis=0), magnification, axis=1)


def centers(tile: np.ndarray, magnification: int) -> np.ndarray:
    """View of the center cell of every M x M block of a tile raster."""
    c = center_offset(magnification)
    return tile[c::magnification, c::magnification]


def _apply_visibility(canvas: np.ndarray, magnification: int,
                      disabled_packed: np.ndarray) -> None:
    """Hide everything except the center cell of each block, in place."""
    c = magnification // 2
    packed = pack_rgb(canvas)
    sentinel = packed == SENTINEL_PACKED

    keep = np.zeros(canvas.shape[:2], dtype=bool)
    keep[c::magnification, c::magnification] = True
    if disabled_packed.size:
        keep &= ~np.isin(packed, disabled_packed)
    keep &= ~sentinel

    canvas[..., 3][~keep] = 0

    if sentinel.any():
        ys, xs = np.indices(canvas.shape[:2])
        checker = sentinel & ((xs + ys) % 2 == 0)
        canvas[sentinel, :3] = 0
        canvas[..., 3][checker] = SENTINEL_CHECKER_ALPHA


def generate_tiles(raster: Raster, coords: Sequence[int],
                   disabled: Iterable = (),
                   tile_size: int = DEFAULT_TILE_SIZE,
                   magnification: int = DEFAULT_MAGNIFICATION) -> GeneratedTiles:
    """Split ``raster`` into magnified tiles positioned at ``coords``.

    Args:
        raster: Decoded template image.
        coords: ``(tile_x, tile_y, pixel_x, pixel_y)`` of the top-left pixel.
        disabled: Colors whose center cells are hidden.
        tile_size: Canvas tile edge length in pixels.
        magnification: Odd upscale factor M.

    Returns a :class:`GeneratedTiles` holding tile rasters and their base64
    payloads. A tile whose payload cannot be encoded keeps its raster but
    has no payload entry.
    """
    m = validate_magnification(magnification)
    if len(coords) != 4:
        raise ValueError(f"Coords must be [tileX, tileY, pixelX, pixelY], got {coords!r}")
    disabled_packed = packed_set(disabled)

    result = GeneratedTiles(
        pixel_count=raster.width * raster.height,
        width=raster.width,
        height=raster.height,
    )
    logger.info(
        "Generating tiles for %dx%d template at %s (tile=%d, M=%d)",
        raster.width, raster.height, list(coords), tile_size, m,
    )

    for band in iter_tile_bands(raster.width, raster.height, coords, tile_size):
        canvas = np.zeros((band.height * m, band.width * m, 4), dtype=np.uint8)
        raster.draw_into(
            canvas,
            (band.src_x, band.src_y, band.width, band.height),
            (0, 0, band.width * m, band.height * m),
        )
        _apply_visibility(canvas, m, disabled_packed)

        key = format_tile_key(band.tile_x, band.tile_y, band.pixel_x, band.pixel_y)
        result.tiles[key] = canvas
        try:
            result.payloads[key] = encode_payload(canvas)
        except TileEncodeError as e:
            logger.error("Skipping payload for tile %s: %s", key, e)

    logger.debug("Generated %d tiles (%d payloads)", len(result.tiles), len(result.payloads))
    return result


def apply_color_filter(tiles: Dict[str, np.ndarray], disabled: Iterable,
                       magnification: int = DEFAULT_MAGNIFICATION) -> Dict[str, np.ndarray]:
    """Zero the alpha of disabled colors on center cells, in place.

    Non-center cells are left untouched. Hidden pixels cannot be restored
    from the filtered tiles.
    """
    disabled_packed = packed_set(disabled)
    if not disabled_packed.size:
        return tiles
    for key, tile in tiles.items():
        center = centers(tile, magnification)
        hit = np.isin(pack_rgb(center), disabled_packed)
        if hit.any():
            center[..., 3][hit] = 0
            logger.debug("Color filter hid %d pixels on tile %s", int(hit.sum()), key)
    return tiles


def required_mask(tile: np.ndarray, magnification: int,
                  low_alpha: int = LOW_ALPHA_THRESHOLD,
                  disabled: Optional[Iterable] = None) -> np.ndarray:
    """Boolean mask over block centers that a painter must reproduce."""
    center = centers(tile, magnification)
    packed = pack_rgb(center)
    mask = (center[..., 3] >= low_alpha) & (packed != SENTINEL_PACKED)
    if disabled:
        disabled_packed = packed_set(disabled)
        if disabled_packed.size:
            mask &= ~np.isin(packed, disabled_packed)
    return mask


def count_opaque_centers(tiles: Dict[str, np.ndarray],
                         magnification: int = DEFAULT_MAGNIFICATION) -> int:
    """Count center cells with any opacity; used when restoring stored tiles."""
    return sum(
        int((centers(tile, magnification)[..., 3] > 0).sum())
        for tile in tiles.values()
    )


def count_required_pixels(tiles: Dict[str, np.ndarray],
                          magnification: int = DEFAULT_MAGNIFICATION,
                          disabled: Optional[Iterable] = None,
                          low_alpha: int = LOW_ALPHA_THRESHOLD) -> int:
    """Count opaque, non-sentinel center cells across ``tiles``."""
    return sum(
        int(required_mask(tile, magnification, low_alpha, disabled).sum())
        for tile in tiles.values()
    )
