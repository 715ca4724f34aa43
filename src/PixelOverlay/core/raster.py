"""Raster decode/encode utilities with explicit primary and fallback paths.

Images are decoded once into an RGBA ``uint8`` array wrapped by a
:class:`Raster` variant. The variant is chosen at decode time (Pillow first,
OpenCV when Pillow cannot read the data) and every later draw goes through
the same ``draw_into`` call regardless of which decoder produced it.
"""

import base64
import binascii
import io
import logging
import os
from pathlib import Path
from typing import Tuple, Union

import cv2
import numpy as np
from PIL import Image

logger = logging.getLogger("pixel_overlay.raster")

Rect = Tuple[int, int, int, int]
ImageSource = Union[
    bytes, bytearray, memoryview, str, os.PathLike, np.ndarray, Image.Image, "Raster",
]

_DATA_URL_PREFIX = "data:image/png;base64,"


class TemplateDecodeError(IOError):
    """Raised when neither decoder can read an image."""


class TileEncodeError(IOError):
    """Raised when neither encoder can serialize a tile raster."""


def ensure_rgba(arr: np.ndarray) -> np.ndarray:
    """Return ``arr`` as a contiguous ``(H, W, 4)`` uint8 array."""
    arr = np.asarray(arr)
    if arr.dtype != np.uint8:
        if np.issubdtype(arr.dtype, np.floating):
            arr = np.round(np.clip(arr, 0.0, 1.0) * 255.0).astype(np.uint8)
        elif arr.dtype == np.uint16:
            arr = (arr >> 8).astype(np.uint8)
        else:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 2:
        arr = np.stack([arr] * 3, axis=-1)
    if arr.ndim != 3 or arr.shape[-1] not in (1, 3, 4):
        raise ValueError(f"Expected HxW, HxWx3 or HxWx4 raster, got shape {arr.shape}")
    if arr.shape[-1] == 1:
        arr = np.concatenate([arr] * 3, axis=-1)
    if arr.shape[-1] == 3:
        alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
        arr = np.concatenate([arr, alpha], axis=-1)
    return np.ascontiguousarray(arr)


class Raster:
    """Decoded RGBA image with a single drawing capability."""

    decoder = "array"

    def __init__(self, pixels: np.ndarray):
        self._pixels = ensure_rgba(pixels)

    @property
    def width(self) -> int:
        return int(self._pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self._pixels.shape[0])

    @property
    def pixels(self) -> np.ndarray:
        return self._pixels

    def _scale(self, region: np.ndarray, width: int, height: int) -> np.ndarray:
        ys = (np.arange(height) * region.shape[0]) // max(height, 1)
        xs = (np.arange(width) * region.shape[1]) // max(width, 1)
        return region[ys][:, xs]

    def draw_into(self, target: np.ndarray, src_rect: Rect, dst_rect: Rect) -> None:
        """Copy ``src_rect`` of this raster into ``dst_rect`` of ``target``.

        Rects are ``(x, y, width, height)``. Scaling is nearest neighbor so
        an integer upscale replicates every source pixel into a solid block.
        """
        sx, sy, sw, sh = src_rect
        dx, dy, dw, dh = dst_rect
        if sw <= 0 or sh <= 0 or dw <= 0 or dh <= 0:
            return
        region = self._pixels[sy:sy + sh, sx:sx + sw]
        if region.shape[0] != sh or region.shape[1] != sw:
            raise ValueError(
                f"Source rect {src_rect} exceeds raster bounds {self.width}x{self.height}"
            )
        if (dw, dh) == (sw, sh):
            scaled = region
        else:
            scaled = self._scale(region, dw, dh)
        target[dy:dy + dh, dx:dx + dw] = scaled


class PillowRaster(Raster):
    """Raster decoded (and scaled) with Pillow."""

    decoder = "pillow"

    @classmethod
    def from_bytes(cls, data: bytes) -> "PillowRaster":
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.mode == "RGBA":
                arr = np.array(img, dtype=np.uint8)
            else:
                logger.debug("Converting %s image to RGBA", img.mode)
                with img.convert("RGBA") as converted:
                    arr = np.array(converted, dtype=np.uint8)
        return cls(arr)

    @classmethod
    def from_image(cls, img: Image.Image) -> "PillowRaster":
        if img.mode == "RGBA":
            return cls(np.array(img, dtype=np.uint8))
        with img.convert("RGBA") as converted:
            return cls(np.array(converted, dtype=np.uint8))

    def _scale(self, region: np.ndarray, width: int, height: int) -> np.ndarray:
        resample = getattr(Image, "Resampling", Image).NEAREST
        with Image.fromarray(np.ascontiguousarray(region)) as img:
            with img.resize((width, height), resample=resample) as resized:
                return np.asarray(resized, dtype=np.uint8)


class OpenCVRaster(Raster):
    """Raster decoded (and scaled) with OpenCV."""

    decoder = "opencv"

    @classmethod
    def from_bytes(cls, data: bytes) -> "OpenCVRaster":
        buf = np.frombuffer(bytes(data), dtype=np.uint8)
        decoded = cv2.imdecode(buf, cv2.IMREAD_UNCHANGED)
        if decoded is None:
            raise ValueError("cv2.imdecode returned no image")
        if decoded.dtype == np.uint16:
            decoded = (decoded >> 8).astype(np.uint8)
        if decoded.ndim == 2:
            rgba = cv2.cvtColor(decoded, cv2.COLOR_GRAY2RGBA)
        elif decoded.shape[-1] == 4:
            rgba = cv2.cvtColor(decoded, cv2.COLOR_BGRA2RGBA)
        else:
            rgba = cv2.cvtColor(decoded, cv2.COLOR_BGR2RGBA)
        return cls(rgba)

    def _scale(self, region: np.ndarray, width: int, height: int) -> np.ndarray:
        return cv2.resize(
            np.ascontiguousarray(region), (width, height),
            interpolation=cv2.INTER_NEAREST,
        )


def _read_source_bytes(source) -> bytes:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    path = Path(os.fspath(source))
    try:
        return path.read_bytes()
    except OSError as e:
        logger.error("Failed to read image file '%s': %s", path, e)
        raise TemplateDecodeError(f"Failed to read image: {path}: {e}") from e


def decode_image(source: ImageSource) -> Raster:
    """Decode ``source`` into a :class:`Raster`.

    Encoded bytes and file paths go through Pillow first and OpenCV second.
    In-memory arrays and Pillow images are wrapped directly.
    """
    if isinstance(source, Raster):
        return source
    if isinstance(source, Image.Image):
        return PillowRaster.from_image(source)
    if isinstance(source, np.ndarray):
        return Raster(source)

    data = _read_source_bytes(source)
    if not data:
        raise TemplateDecodeError("Cannot decode empty image data")

    try:
        return PillowRaster.from_bytes(data)
    except Exception as primary_err:
        logger.warning(
            "Pillow could not decode image (%s); retrying with OpenCV.", primary_err
        )
        try:
            raster = OpenCVRaster.from_bytes(data)
        except Exception as fallback_err:
            logger.error(
                "Image decode failed with both decoders: pillow=%s, opencv=%s",
                primary_err, fallback_err,
            )
            raise TemplateDecodeError(
                f"Failed to decode image ({len(data)} bytes)\n"
                f"  Pillow error: {primary_err}\n"
                f"  OpenCV error: {fallback_err}"
            ) from fallback_err
        logger.debug("Decoded %dx%d image with OpenCV fallback", raster.width, raster.height)
        return raster


def _encode_png_pillow(arr: np.ndarray) -> bytes:
    out = io.BytesIO()
    with Image.fromarray(arr) as img:
        img.save(out, format="PNG", optimize=False)
    return out.getvalue()


def _encode_png_opencv(arr: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", cv2.cvtColor(arr, cv2.COLOR_RGBA2BGRA))
    if not ok:
        raise IOError("cv2.imencode failed for PNG")
    return buf.tobytes()


def encode_png(arr: np.ndarray) -> bytes:
    """Encode an RGBA raster as PNG bytes (Pillow, then OpenCV)."""
    rgba = ensure_rgba(arr)
    try:
        return _encode_png_pillow(rgba)
    except Exception as primary_err:
        logger.warning("Pillow PNG encode failed (%s); retrying with OpenCV.", primary_err)
        try:
            return _encode_png_opencv(rgba)
        except Exception as fallback_err:
            raise TileEncodeError(
                f"PNG encode failed: pillow={primary_err}, opencv={fallback_err}"
            ) from fallback_err


def encode_payload(arr: np.ndarray) -> str:
    """Serialize a tile raster into the persisted base64 text payload."""
    return base64.b64encode(encode_png(arr)).decode("ascii")


def decode_payload(payload: str) -> Raster:
    """Decode a persisted payload (plain base64 or a PNG data URL)."""
    text = payload.strip()
    if text.startswith(_DATA_URL_PREFIX):
        text = text[len(_DATA_URL_PREFIX):]
    elif text.startswith("data:"):
        _, _, text = text.partition(",")
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise TemplateDecodeError(f"Tile payload is not valid base64: {e}") from e
    return decode_image(data)


def alpha_composite(dst: np.ndarray, src: np.ndarray, x: int, y: int) -> None:
    """Composite ``src`` over ``dst`` in place at ``(x, y)`` (source-over).

    The part of ``src`` that falls outside ``dst`` is clipped.
    """
    dh, dw = dst.shape[:2]
    sh, sw = src.shape[:2]
    w = min(sw, dw - x)
    h = min(sh, dh - y)
    if w <= 0 or h <= 0 or x < 0 or y < 0:
        return
    with Image.fromarray(np.ascontiguousarray(dst[y:y + h, x:x + w])) as base:
        with Image.fromarray(np.ascontiguousarray(src[:h, :w])) as over:
            with Image.alpha_composite(base, over) as merged:
                dst[y:y + h, x:x + w] = np.asarray(merged, dtype=np.uint8)
