"""Core utilities -- re-exports all public symbols for convenience."""

from .colors import (
    ColorFilter,
    LOW_ALPHA_THRESHOLD,
    SENTINEL_KEY,
    SENTINEL_RGB,
    color_key,
    parse_color_key,
)
from .raster import (
    OpenCVRaster,
    PillowRaster,
    Raster,
    TemplateDecodeError,
    TileEncodeError,
    decode_image,
    decode_payload,
    encode_payload,
    encode_png,
)
from .records import ColorCounts, ColorStats, PixelClass, TileProgress
from .tiling import (
    GeneratedTiles,
    apply_color_filter,
    count_required_pixels,
    format_tile_key,
    generate_tiles,
    parse_tile_key,
)
from .analysis import ProgressTracker, analyze_tile, classify_tile
from .crosshair import CrosshairRenderer, CrosshairStyle
from .cache import FreezeController, TileCache
from .storage import StorageError, TemplateStore
from .logging import setup_logging

__all__ = [
    "ColorFilter", "LOW_ALPHA_THRESHOLD", "SENTINEL_KEY", "SENTINEL_RGB",
    "color_key", "parse_color_key",
    "OpenCVRaster", "PillowRaster", "Raster",
    "TemplateDecodeError", "TileEncodeError",
    "decode_image", "decode_payload", "encode_payload", "encode_png",
    "ColorCounts", "ColorStats", "PixelClass", "TileProgress",
    "GeneratedTiles", "apply_color_filter", "count_required_pixels",
    "format_tile_key", "generate_tiles", "parse_tile_key",
    "ProgressTracker", "analyze_tile", "classify_tile",
    "CrosshairRenderer", "CrosshairStyle",
    "FreezeController", "TileCache",
    "StorageError", "TemplateStore",
    "setup_logging",
]
