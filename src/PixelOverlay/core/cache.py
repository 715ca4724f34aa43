"""Bounded composite cache and the live/frozen switch in front of it."""

import logging
from collections import OrderedDict
from typing import Callable, Iterable, Optional, Sequence, Union

from .tiling import format_tile_key, tile_prefix

logger = logging.getLogger("pixel_overlay.cache")

DEFAULT_CAPACITY = 100

TileId = Union[str, Sequence[int]]
Processor = Callable[[bytes, tuple], bytes]


def normalize_tile_id(tile: TileId) -> str:
    """Return the cache key for a canvas tile.

    Accepts a ready key string, a ``(tile_x, tile_y)`` pair or a full
    ``(tile_x, tile_y, pixel_x, pixel_y)`` tuple.
    """
    if isinstance(tile, str):
        return tile
    parts = tuple(int(p) for p in tile)
    if len(parts) == 2:
        return tile_prefix(*parts)
    if len(parts) == 4:
        return format_tile_key(*parts)
    raise ValueError(f"Tile id must have 2 or 4 components, got {tile!r}")


class TileCache:
    """Insertion-ordered cache that evicts its oldest entry when full."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"Cache capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._entries: "OrderedDict[str, bytes]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self):
        return list(self._entries.keys())

    def get(self, key: str) -> Optional[bytes]:
        return self._entries.get(key)

    def put(self, key: str, value: bytes) -> None:
        # Overwriting moves the key to the newest position.
        self._entries.pop(key, None)
        self._entries[key] = value
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cached tile %s", evicted)

    def discard(self, prefix: str) -> int:
        stale = [k for k in self._entries if k.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


class FreezeController:
    """Routes incoming tiles through the compositor or the frozen cache.

    In the live state each tile is processed and its composite cached. In
    the frozen state the cached composite (or, failing that, the raw tile)
    is returned as-is without processing.
    """

    LIVE = "live"
    FROZEN = "frozen"

    def __init__(self, process: Processor, capacity: int = DEFAULT_CAPACITY,
                 frozen: bool = False):
        self._process = process
        self.cache = TileCache(capacity)
        self._frozen = bool(frozen)

    @property
    def state(self) -> str:
        return self.FROZEN if self._frozen else self.LIVE

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        if not self._frozen:
            logger.info("Tile processing frozen (%d cached tiles)", len(self.cache))
        self._frozen = True

    def resume(self) -> None:
        if self._frozen:
            logger.info("Tile processing resumed")
        self._frozen = False

    def toggle(self) -> str:
        if self._frozen:
            self.resume()
        else:
            self.freeze()
        return self.state

    def handle(self, tile_bytes: bytes, tile: TileId) -> bytes:
        key = normalize_tile_id(tile)
        if self._frozen:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
            logger.debug("Frozen with no cache entry for %s; passing raw tile", key)
            return tile_bytes
        result = self._process(tile_bytes, tuple(int(p) for p in key.split(",")))
        self.cache.put(key, result)
        return result

    def force_refresh(self, tile_bytes: bytes, tile: TileId) -> bytes:
        """Process one tile regardless of state without touching the cache."""
        key = normalize_tile_id(tile)
        logger.debug("Force refresh of tile %s (state=%s)", key, self.state)
        return self._process(tile_bytes, tuple(int(p) for p in key.split(",")))

    def invalidate(self, prefixes: Optional[Iterable[str]] = None) -> int:
        """Clear the whole cache, or only entries under ``prefixes``."""
        if prefixes is None:
            count = len(self.cache)
            self.cache.clear()
        else:
            count = sum(self.cache.discard(p) for p in prefixes)
        if count:
            logger.debug("Invalidated %d cached tiles", count)
        return count

    def purge(self, prefix: str) -> int:
        return self.cache.discard(prefix)

    def stats(self) -> dict:
        return {
            "state": self.state,
            "cached": len(self.cache),
            "capacity": self.cache.capacity,
            "keys": self.cache.keys(),
        }
