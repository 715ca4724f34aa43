"""Define typed configuration models for the overlay engine.

Use `OverlayConfig` to load, validate, and persist runtime settings.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List

import yaml

logger = logging.getLogger("pixel_overlay.config")


@dataclass
class CrosshairConfig:
    """Highlight overlay around not-yet-correct enhanced pixels."""

    enabled: bool = True
    color: List[int] = field(default_factory=lambda: [255, 0, 0])
    alpha: int = 255
    border_enabled: bool = False
    enhanced_size: bool = False
    radius: int = 16
    corner_color: List[int] = field(default_factory=lambda: [0, 100, 255])
    corner_alpha: int = 200
    max_enhanced_pixels: int = 23000
    chunk_threshold: int = 12000
    chunk_size: int = 2000


@dataclass
class ErrorMapConfig:
    """Green/red classification overlay drawn over the composite."""

    enabled: bool = False
    show_correct: bool = True
    show_wrong: bool = True
    show_unpainted_as_wrong: bool = False


@dataclass
class ProgressConfig:
    low_alpha_threshold: int = 64
    include_wrong_in_progress: bool = False
    # Wrong cells sit inside a painted block, so one-cell arms cannot mark
    # them. Only visible together with crosshair.enhanced_size.
    enhance_wrong_colors: bool = False
    error_map: ErrorMapConfig = field(default_factory=ErrorMapConfig)


@dataclass
class CacheConfig:
    """Composite tile cache and freeze state."""

    capacity: int = 100
    frozen: bool = False


@dataclass
class StorageConfig:
    primary_path: str = "./overlay/templates.json"
    secondary_path: str = "./overlay/templates.backup.json"


_SUPPORTED_CONFIG_VERSION = 1


@dataclass
class OverlayConfig:
    """Master overlay configuration."""

    config_version: int = 1
    tile_size: int = 1000
    magnification: int = 3
    identity_tag: str = "PixelOverlay"
    schema_version: str = "2.1.0"
    user_id: int = 0
    log_level: str = "INFO"
    log_file: str = ""

    crosshair: CrosshairConfig = field(default_factory=CrosshairConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "OverlayConfig":
        """Load overlay configuration from YAML or return defaults."""
        if not os.path.exists(path):
            logger.info("Config file '%s' not found. Using defaults.", path)
            config = cls()
            config.validate()
            return config
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(
                f"Failed to parse YAML config '{path}': {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise ValueError(
                f"Config file '{path}' must contain a YAML mapping, "
                f"got {type(data).__name__}"
            )
        yaml_version = data.get("config_version", 1)
        if isinstance(yaml_version, int) and yaml_version > _SUPPORTED_CONFIG_VERSION:
            logger.warning(
                "Config file '%s' has config_version=%d, but this build only "
                "supports up to version %d. Some settings may be ignored.",
                path, yaml_version, _SUPPORTED_CONFIG_VERSION,
            )
        config = cls()
        _merge_dict_to_dataclass(config, data)
        try:
            config.validate()
        except ValueError as exc:
            raise ValueError(f"{path}: {exc}") from exc
        return config

    def to_yaml(self, path: str):
        """Write overlay configuration to a YAML file."""
        import dataclasses
        import threading as _th
        data = dataclasses.asdict(self)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        ext = os.path.splitext(path)[1]
        tmp_path = f"{path}.tmp.{os.getpid()}.{_th.get_ident()}{ext}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def validate(self):
        """Validate configuration values. Raises ValueError on invalid config."""
        errors = []

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_log_levels:
            errors.append(
                f"log_level must be one of {sorted(valid_log_levels)}, "
                f"got '{self.log_level}'"
            )

        if self.tile_size < 1:
            errors.append("tile_size must be >= 1")
        if self.magnification < 1 or self.magnification % 2 == 0:
            errors.append(f"magnification must be an odd integer >= 1, got {self.magnification}")
        if not self.identity_tag:
            errors.append("identity_tag must not be empty")
        if self.user_id < 0:
            errors.append("user_id must be >= 0")

        # Crosshair
        ch = self.crosshair
        _check_rgb(errors, "crosshair.color", ch.color)
        _check_rgb(errors, "crosshair.corner_color", ch.corner_color)
        for name in ("alpha", "corner_alpha"):
            value = getattr(ch, name)
            if not 0 <= value <= 255:
                errors.append(f"crosshair.{name} must be in [0, 255], got {value}")
        if not 12 <= ch.radius <= 32:
            errors.append(f"crosshair.radius must be in [12, 32], got {ch.radius}")
        if ch.max_enhanced_pixels < 1:
            errors.append("crosshair.max_enhanced_pixels must be >= 1")
        if ch.chunk_threshold < 1:
            errors.append("crosshair.chunk_threshold must be >= 1")
        if ch.chunk_threshold > ch.max_enhanced_pixels:
            errors.append(
                "crosshair.chunk_threshold must be <= crosshair.max_enhanced_pixels"
            )
        if ch.chunk_size < 1:
            errors.append("crosshair.chunk_size must be >= 1")

        # Progress
        if not 0 <= self.progress.low_alpha_threshold <= 255:
            errors.append("progress.low_alpha_threshold must be in [0, 255]")

        # Cache
        if self.cache.capacity < 1:
            errors.append("cache.capacity must be >= 1")

        # Storage
        if not self.storage.primary_path:
            errors.append("storage.primary_path must not be empty")

        if errors:
            raise ValueError(
                "Configuration validation failed:\n" +
                "\n".join(f"  - {e}" for e in errors)
            )


def _check_rgb(errors: list, name: str, value) -> None:
    if (not isinstance(value, (list, tuple)) or len(value) != 3
            or not all(isinstance(v, int) and 0 <= v <= 255 for v in value)):
        errors.append(f"{name} must be three integers in [0, 255], got {value!r}")


def _merge_dict_to_dataclass(obj, data: dict, _path: str = ""):
    import dataclasses
    for key, value in data.items():
        if hasattr(obj, key):
            field_val = getattr(obj, key)
            if dataclasses.is_dataclass(field_val) and isinstance(value, dict):
                _merge_dict_to_dataclass(field_val, value, f"{_path}{key}.")
            else:
                full_key = f"{_path}{key}"
                if value is None and field_val is not None:
                    logger.warning(
                        f"Config key '{full_key}' is null but field default is "
                        f"{type(field_val).__name__}. Using default value."
                    )
                    continue
                expected_type = type(field_val)
                # Allow int->float and exact float->int promotion
                if (field_val is not None
                        and not isinstance(value, expected_type)
                        and not (expected_type is float
                                 and isinstance(value, int))
                        and not (expected_type is int
                                 and isinstance(value, float)
                                 and value == int(value))):
                    logger.warning(
                        f"Config type mismatch for '{full_key}': "
                        f"expected {expected_type.__name__}, "
                        f"got {type(value).__name__} ({value!r}). "
                        f"Using default value."
                    )
                    continue
                if (expected_type is int and isinstance(value, float)
                        and value == int(value)):
                    value = int(value)
                setattr(obj, key, value)
        else:
            full_key = f"{_path}{key}"
            logger.warning(f"Unknown config key ignored: '{full_key}'")
