"""Canonical color keys and the per-template color filter.

Colors are keyed by ``"r,g,b"`` strings (no alpha) so that filter sets
deduplicate regardless of how a color was supplied. For vectorized work the
same colors are packed into ``uint32`` values (``r << 16 | g << 8 | b``).
"""

import logging
from typing import Callable, FrozenSet, Iterable, List, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger("pixel_overlay.colors")

# "#deface": reserved for intentionally blank cells used only for alignment.
SENTINEL_RGB: Tuple[int, int, int] = (222, 250, 206)
SENTINEL_KEY = "222,250,206"
SENTINEL_PACKED = (222 << 16) | (250 << 8) | 206

# Alpha below this is treated as transparent (template) or unpainted (live).
LOW_ALPHA_THRESHOLD = 64

ColorLike = Union[str, Sequence[int]]
InvalidationListener = Callable[[int], None]


def color_key(color: ColorLike) -> str:
    """Return the canonical ``"r,g,b"`` key for an RGB(A) tuple or key string.

    A fourth (alpha) component is accepted and dropped.
    """
    if isinstance(color, str):
        parts = [p.strip() for p in color.split(",")]
    else:
        parts = list(color)
    if len(parts) not in (3, 4):
        raise ValueError(f"Color must have 3 or 4 components, got {color!r}")
    try:
        rgb = [int(p) for p in parts[:3]]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Color components must be integers, got {color!r}") from exc
    if any(v < 0 or v > 255 for v in rgb):
        raise ValueError(f"Color components must be in [0, 255], got {color!r}")
    return f"{rgb[0]},{rgb[1]},{rgb[2]}"


def parse_color_key(key: str) -> Tuple[int, int, int]:
    """Split a ``"r,g,b"`` key back into an integer tuple."""
    r, g, b = (int(v) for v in color_key(key).split(","))
    return r, g, b


def pack_key(key: ColorLike) -> int:
    r, g, b = parse_color_key(color_key(key))
    return (r << 16) | (g << 8) | b


def unpack_key(packed: int) -> str:
    packed = int(packed)
    return f"{(packed >> 16) & 0xFF},{(packed >> 8) & 0xFF},{packed & 0xFF}"


def pack_rgb(arr: np.ndarray) -> np.ndarray:
    """Pack the RGB channels of an ``(..., 3+)`` uint8 array into uint32."""
    rgb = arr[..., :3].astype(np.uint32, copy=False)
    return (rgb[..., 0] << 16) | (rgb[..., 1] << 8) | rgb[..., 2]


def packed_set(colors: Iterable[ColorLike]) -> np.ndarray:
    """Return a sorted uint32 array of packed colors for ``np.isin`` lookups."""
    values = sorted({pack_key(c) for c in colors})
    return np.asarray(values, dtype=np.uint32)


class ColorFilter:
    """Disabled and enhanced color sets owned by a single template.

    Every effective mutation bumps ``generation`` and notifies subscribed
    listeners with the new value. Dependent caches clear themselves on that
    signal; nothing is updated in place.
    """

    def __init__(self, disabled: Iterable[ColorLike] = (),
                 enhanced: Iterable[ColorLike] = ()):
        self._disabled = {color_key(c) for c in disabled}
        self._enhanced = {color_key(c) for c in enhanced}
        self._listeners: List[InvalidationListener] = []
        self.generation = 0

    def subscribe(self, listener: InvalidationListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: InvalidationListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def invalidate(self) -> int:
        """Emit a new invalidation token to every listener."""
        self.generation += 1
        logger.debug("Color filter invalidated (generation %d).", self.generation)
        for listener in list(self._listeners):
            listener(self.generation)
        return self.generation

    # Disabled colors

    def disable(self, color: ColorLike) -> int:
        key = color_key(color)
        if key in self._disabled:
            return self.generation
        self._disabled.add(key)
        return self.invalidate()

    def enable(self, color: ColorLike) -> int:
        key = color_key(color)
        if key not in self._disabled:
            return self.generation
        self._disabled.discard(key)
        return self.invalidate()

    def is_disabled(self, color: ColorLike) -> bool:
        return color_key(color) in self._disabled

    @property
    def disabled(self) -> FrozenSet[str]:
        return frozenset(self._disabled)

    def get_disabled(self) -> List[str]:
        return sorted(self._disabled)

    def set_disabled(self, colors: Iterable[ColorLike]) -> int:
        self._disabled = {color_key(c) for c in (colors or ())}
        return self.invalidate()

    # Enhanced colors

    def enable_enhanced(self, color: ColorLike) -> int:
        key = color_key(color)
        if key in self._enhanced:
            return self.generation
        self._enhanced.add(key)
        return self.invalidate()

    def disable_enhanced(self, color: ColorLike) -> int:
        key = color_key(color)
        if key not in self._enhanced:
            return self.generation
        self._enhanced.discard(key)
        return self.invalidate()

    def is_enhanced(self, color: ColorLike) -> bool:
        return color_key(color) in self._enhanced

    @property
    def enhanced(self) -> FrozenSet[str]:
        return frozenset(self._enhanced)

    def get_enhanced(self) -> List[str]:
        return sorted(self._enhanced)

    def set_enhanced(self, colors: Iterable[ColorLike]) -> int:
        self._enhanced = {color_key(c) for c in (colors or ())}
        return self.invalidate()
