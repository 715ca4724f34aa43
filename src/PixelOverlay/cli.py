"""Command-line interface for the overlay engine."""

import argparse
import json
import logging
import os
import re
import sys

from tqdm import tqdm

from .config import OverlayConfig
from .core import StorageError, TemplateDecodeError, TemplateStore, setup_logging

logger = logging.getLogger("pixel_overlay")

_TILE_NAME_RE = re.compile(r"(\d+)[_,\-](\d+)")


def _parse_int_list(value: str, count: int, flag: str):
    parts = [p.strip() for p in value.split(",") if p.strip()]
    if len(parts) != count or not all(p.lstrip("-").isdigit() for p in parts):
        raise ValueError(f"{flag} expects {count} comma-separated integers, got '{value}'")
    return [int(p) for p in parts]


def _tile_coords_for(path: str, default):
    if default is not None:
        return default
    match = _TILE_NAME_RE.search(os.path.splitext(os.path.basename(path))[0])
    if not match:
        raise ValueError(
            f"Cannot infer tile coordinates from '{path}'; pass --tile tx,ty"
        )
    return [int(match.group(1)), int(match.group(2))]


def main():
    """Parse CLI arguments and run the requested template operations."""
    parser = argparse.ArgumentParser(
        description="Template overlay and progress tracking for tiled pixel canvases",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pixel-overlay --generate-config
  pixel-overlay --create art.png --name "My art" --coords 12,34,500,250
  pixel-overlay --list
  pixel-overlay --composite 12_34.png --output ./out --progress
  pixel-overlay --delete "0 !"
        """
    )
    parser.add_argument("--config", "-c", help="Path to config YAML")
    parser.add_argument("--generate-config", action="store_true",
                        help="Generate default config.yaml")
    parser.add_argument("--store", help="Primary template store path (overrides config)")
    parser.add_argument("--create", metavar="IMAGE", help="Create a template from an image")
    parser.add_argument("--name", help="Display name for --create")
    parser.add_argument("--coords", help="tileX,tileY,pixelX,pixelY for --create")
    parser.add_argument("--list", action="store_true", help="List stored templates")
    parser.add_argument("--delete", metavar="KEY", help="Delete one template by key")
    parser.add_argument("--delete-all", action="store_true", help="Delete every template")
    parser.add_argument("--composite", nargs="+", metavar="TILE",
                        help="Live canvas tile PNG(s) to composite")
    parser.add_argument("--tile", help="tileX,tileY of the --composite input(s)")
    parser.add_argument("--output", "-o", default=".", help="Output directory for composites")
    parser.add_argument("--progress", action="store_true",
                        help="Print per-template progress as JSON")
    parser.add_argument("--freeze", action="store_true",
                        help="Start with tile processing frozen")
    parser.add_argument("--log-level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])

    args = parser.parse_args()

    if args.generate_config:
        config = OverlayConfig()
        dest = args.config or "config.yaml"
        if os.path.isdir(dest):
            dest = os.path.join(dest, "config.yaml")
        config.to_yaml(dest)
        logger.info("Generated default %s", dest)
        print(f"Generated default {dest}")
        return

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    if args.config:
        if not os.path.exists(args.config):
            logger.error("Config file not found: %s", args.config)
            print(f"Error: Config file not found: {args.config}")
            sys.exit(1)
        try:
            config = OverlayConfig.from_yaml(args.config)
        except ValueError as e:
            logger.error("Invalid config file '%s': %s", args.config, e)
            print(f"Error: Invalid config: {e}")
            sys.exit(1)
    else:
        config = OverlayConfig()

    if args.log_level:
        config.log_level = args.log_level
    if args.store:
        config.storage.primary_path = args.store
    if args.freeze:
        config.cache.frozen = True

    setup_logging(config.log_level, config.log_file or None, force=True)

    try:
        config.validate()
        coords = _parse_int_list(args.coords, 4, "--coords") if args.coords else None
        tile = _parse_int_list(args.tile, 2, "--tile") if args.tile else None
    except ValueError as e:
        logger.error(str(e))
        print(f"Error: {e}")
        sys.exit(1)

    if args.create and (coords is None or not args.name):
        print("Error: --create requires --name and --coords")
        sys.exit(1)

    from .manager import TemplateManager, TemplateNotFoundError
    from .pipeline import OverlayPipeline

    manager = TemplateManager(config, TemplateStore.from_config(config.storage))
    pipeline = OverlayPipeline(config, manager)

    try:
        manager.load()

        if args.delete_all:
            count = manager.delete_all()
            print(f"Deleted {count} templates")
        elif args.delete:
            manager.delete_template(args.delete)
            print(f"Deleted template {args.delete}")

        if args.create:
            template = manager.create_template(args.create, args.name, coords)
            print(
                f"Created template {template.key!r} '{template.display_name}' "
                f"({template.pixel_count} pixels, {len(template.tiles)} tiles)"
            )

        if args.list:
            for template in manager.templates_sorted():
                state = "enabled" if template.enabled else "disabled"
                print(
                    f"{template.key!r}\t{template.display_name}\t"
                    f"{','.join(str(c) for c in template.coords)}\t"
                    f"{template.pixel_count} px\t{len(template.tiles)} tiles\t{state}"
                )

        if args.composite:
            os.makedirs(args.output, exist_ok=True)
            for path in tqdm(args.composite, desc="Compositing", unit="tile"):
                tile_xy = _tile_coords_for(path, tile)
                with open(path, "rb") as f:
                    raw = f.read()
                out = pipeline.handle_tile(raw, tile_xy)
                dest = os.path.join(args.output, os.path.basename(path))
                with open(dest, "wb") as f:
                    f.write(out)
                logger.info("Wrote %s", dest)

        if args.progress:
            print(json.dumps(pipeline.progress_summary(), indent=2))

    except TemplateNotFoundError as e:
        logger.error("Unknown template key: %s", e)
        print(f"Error: Unknown template key: {e}")
        sys.exit(1)
    except TemplateDecodeError as e:
        logger.error("Could not decode image: %s", e)
        print(f"Error: {e}")
        sys.exit(1)
    except StorageError as e:
        logger.error("Storage failure: %s", e)
        print(f"Error: {e}")
        sys.exit(1)
    except (OSError, ValueError) as e:
        logger.error(str(e))
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
