"""Template collection: creation, persistence, filters and progress rollup."""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from . import __version__
from .config import OverlayConfig
from .core.analysis import estimate_color_stats
from .core.colors import ColorLike, color_key
from .core.raster import ImageSource, decode_image
from .core.records import ColorStats, TileProgress, sum_progress
from .core.storage import StorageError, TemplateStore
from .template import Template, split_template_key, utc_now

logger = logging.getLogger("pixel_overlay.manager")

ENCODING_BASE = (
    "!#$%&'()*+,-./0123456789:;<=>?@"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ[]^_`"
    "abcdefghijklmnopqrstuvwxyz{|}~"
)

InvalidationListener = Callable[[Optional[List[str]]], None]


class TemplateNotFoundError(KeyError):
    """Raised for an unknown template key."""


def number_to_encoded(number: int, encoding: str = ENCODING_BASE) -> str:
    """Write a non-negative integer in the positional base given by ``encoding``."""
    number = int(number)
    if number < 0:
        raise ValueError(f"Cannot encode negative number {number}")
    if number == 0:
        return encoding[0]
    base = len(encoding)
    digits = []
    while number > 0:
        number, rem = divmod(number, base)
        digits.append(encoding[rem])
    return "".join(reversed(digits))


class TemplateManager:
    """Owns every :class:`Template` and keeps the stored record in sync.

    Args:
        config: Overlay configuration.
        store: Optional persistence collaborator. Without one, changes
            stay in memory.
    """

    def __init__(self, config: Optional[OverlayConfig] = None,
                 store: Optional[TemplateStore] = None):
        self.config = config or OverlayConfig()
        self.store = store
        self.templates: Dict[str, Template] = {}
        self.created_at = utc_now()
        self._listeners: List[InvalidationListener] = []

    # Invalidation

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def invalidate_overlays(self, prefixes: Optional[List[str]] = None) -> None:
        """Tell listeners that composites under ``prefixes`` (``None``: all) are stale."""
        for listener in list(self._listeners):
            listener(prefixes)

    def _attach(self, template: Template) -> None:
        self.templates[template.key] = template
        template.subscribe(self.invalidate_overlays)

    # Lookup

    def get_template(self, key: str) -> Template:
        try:
            return self.templates[key]
        except KeyError:
            raise TemplateNotFoundError(key) from None

    def templates_sorted(self, enabled_only: bool = False) -> List[Template]:
        items = sorted(self.templates.values(), key=lambda t: (t.sort_id, t.author_id))
        if enabled_only:
            items = [t for t in items if t.enabled]
        return items

    def find_duplicate(self, name: str, pixel_count: int) -> Optional[str]:
        for key, template in self.templates.items():
            if template.display_name == name and template.pixel_count == pixel_count:
                return key
        return None

    def _next_sort_id(self) -> int:
        if not self.templates:
            return 0
        return max(t.sort_id for t in self.templates.values()) + 1

    # Create / import / export

    def create_template(self, image: ImageSource, name: str,
                        coords: Sequence[int]) -> Template:
        """Generate a template from ``image`` and store it.

        A template with the same name and pixel count is replaced in place
        and keeps its sort ID.

        Raises:
            TemplateDecodeError: if ``image`` cannot be decoded.
        """
        raster = decode_image(image)
        pixel_count = raster.width * raster.height
        duplicate = self.find_duplicate(name, pixel_count)
        if duplicate is not None:
            sort_id, _ = split_template_key(duplicate)
            logger.info("Replacing duplicate template '%s' (%s)", name, duplicate)
            self._remove(duplicate)
        else:
            sort_id = self._next_sort_id()

        template = Template(
            display_name=name,
            sort_id=sort_id,
            author_id=number_to_encoded(self.config.user_id),
            coords=coords,
            tile_size=self.config.tile_size,
            magnification=self.config.magnification,
        )
        template.create_tiles(raster)
        self._attach(template)
        self.invalidate_overlays(template.prefixes())
        self.save()
        logger.info("Created template %s '%s' at %s", template.key, name, list(coords))
        return template

    def import_record(self, record: dict, replace: bool = True) -> List[Template]:
        """Load templates from a persisted record.

        Records written under another identity tag are ignored.
        """
        if not isinstance(record, dict):
            raise ValueError("Template record must be a JSON object")
        whoami = record.get("whoami")
        if whoami != self.config.identity_tag:
            logger.warning(
                "Ignoring template record from '%s' (expected '%s')",
                whoami, self.config.identity_tag,
            )
            return []
        if replace:
            for key in list(self.templates):
                self._remove(key)

        loaded = []
        for key, entry in (record.get("templates") or {}).items():
            try:
                template = Template.from_record(
                    key, entry, self.config.tile_size, self.config.magnification,
                )
            except (ValueError, TypeError) as e:
                logger.warning("Skipping malformed template %s: %s", key, e)
                continue
            self._attach(template)
            loaded.append(template)
        logger.info("Imported %d templates", len(loaded))
        self.invalidate_overlays(None)
        return loaded

    def load(self) -> List[Template]:
        if self.store is None:
            return []
        record = self.store.load()
        if record is None:
            logger.info("No stored templates found")
            return []
        return self.import_record(record)

    def export_record(self) -> dict:
        templates = self.templates_sorted()
        return {
            "whoami": self.config.identity_tag,
            "scriptVersion": __version__,
            "schemaVersion": self.config.schema_version,
            "createdAt": self.created_at,
            "lastModified": utc_now(),
            "templateCount": len(templates),
            "totalPixels": sum(t.pixel_count for t in templates),
            "templates": {t.key: t.to_record() for t in templates},
        }

    def save(self) -> Optional[str]:
        """Persist the record; returns the backend used or ``None`` without a store.

        Raises:
            StorageError: if every backend fails.
        """
        if self.store is None:
            return None
        try:
            return self.store.save(self.export_record())
        except StorageError:
            logger.error("Templates could not be saved to any backend")
            raise

    # Delete / enable

    def _remove(self, key: str) -> Template:
        template = self.templates.pop(key)
        template.progress.clear()
        self.invalidate_overlays(template.prefixes())
        return template

    def delete_template(self, key: str) -> Template:
        if key not in self.templates:
            raise TemplateNotFoundError(key)
        template = self._remove(key)
        self.save()
        logger.info("Deleted template %s", key)
        return template

    def delete_all(self) -> int:
        count = len(self.templates)
        for key in list(self.templates):
            self._remove(key)
        self.invalidate_overlays(None)
        self.save()
        logger.info("Deleted all %d templates", count)
        return count

    def set_template_enabled(self, key: str, enabled: bool) -> None:
        template = self.get_template(key)
        if template.enabled == bool(enabled):
            return
        template.enabled = bool(enabled)
        self.invalidate_overlays(template.prefixes())
        self.save()

    def is_template_enabled(self, key: str) -> bool:
        return self.get_template(key).enabled

    # Color filters

    def set_disabled_colors(self, key: str, colors: Iterable[ColorLike]) -> None:
        self.get_template(key).filters.set_disabled(colors)
        self.save()

    def set_enhanced_colors(self, key: str, colors: Iterable[ColorLike]) -> None:
        self.get_template(key).filters.set_enhanced(colors)
        self.save()

    def refresh_crosshair_settings(self) -> None:
        """Invalidate prepared tiles of every template after a style change."""
        for template in self.templates.values():
            template.invalidate_enhanced_cache()

    # Progress

    def build_color_palette(self, key: str) -> Dict[str, int]:
        """Required center pixels per enabled color of one template."""
        return self.get_template(key).color_palette()

    def tile_progress(self, key: Optional[str] = None) -> TileProgress:
        templates = [self.get_template(key)] if key else self.templates_sorted()
        return sum_progress(t.progress.totals() for t in templates)

    def calculate_remaining_pixels_by_color(
            self, key: Optional[str] = None) -> Dict[str, ColorStats]:
        """Per-color remaining work, exact where tile analysis saw the color.

        Colors of the palette that no analyzed tile has reported are
        estimated from the coarse totals. Disabled colors are reported with
        zero counts.
        """
        include_wrong = self.config.progress.include_wrong_in_progress
        templates = [self.get_template(key)] if key else self.templates_sorted()

        totals = sum_progress(t.progress.totals() for t in templates)
        palette: Dict[str, int] = {}
        disabled = set()
        for template in templates:
            for color, count in template.color_palette().items():
                palette[color] = palette.get(color, 0) + count
            disabled.update(template.filters.disabled)

        stats: Dict[str, ColorStats] = {}
        for color, counts in totals.colors.items():
            stats[color] = ColorStats.from_color_counts(counts, include_wrong)
        missing = {c: n for c, n in palette.items() if c not in stats}
        if missing and totals.required:
            logger.debug("Estimating progress for %d colors without tile data", len(missing))
            stats.update(estimate_color_stats(missing, totals, include_wrong))
        elif missing:
            stats.update({c: ColorStats.from_counts(n, 0) for c, n in missing.items()})

        for color in disabled:
            stats[color_key(color)] = ColorStats()
        return {k: stats[k] for k in sorted(stats)}
