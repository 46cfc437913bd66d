#!/usr/bin/env python3
"""
Generate a scaled, georeferenced map from imagery layers.

Reads map_config.json, builds the map frame, downloads or embeds each layer
onto the frame and writes:
  - <name>.svg     composite with one embedded raster per layer
  - <name>.<layer>.png / .pgw   each layer with its world file
  - <name>.pgw, <name>.map      georeferencing for a <name>.png rendering

Usage:
    python generate_map.py
    python generate_map.py --config other_config.json --output maps/
"""

import argparse
import sys
import threading
from pathlib import Path
from typing import Optional

from composite import build_composite, save_layer_images
from errors import MapError
from layers import FetchTiles, RunReport, VectorRenderer, run_layers
from map_config import CONFIG_FILE, MapConfig, load_config
from map_frame import MapFrame


def print_frame_summary(config: MapConfig, frame: MapFrame) -> None:
    width_mm, height_mm = frame.millimetres
    width_px, height_px = frame.dimensions_at(config.ppi)
    print(f"  Map: {frame.name}")
    print(f"  Scale: 1:{frame.scale:,.0f}")
    print(f"  Size: {width_mm:.1f} x {height_mm:.1f} mm ({width_px} x {height_px} px @ {config.ppi:g} ppi)")
    print(f"  Extent: {frame.extents[0] / 1000:.2f} x {frame.extents[1] / 1000:.2f} km")
    if frame.rotation:
        print(f"  Rotation: {frame.rotation:.2f}°")
    print(f"  Resolution: {frame.resolution_at(config.ppi):.2f} m/px")


def generate_map(
    config: MapConfig,
    frame: Optional[MapFrame] = None,
    fetch_tiles: Optional[FetchTiles] = None,
    vector_renderer: Optional[VectorRenderer] = None,
    cancel: Optional[threading.Event] = None,
    verbose: bool = True,
) -> RunReport:
    """Render all configured layers and write the map files.

    The composite is written even when some layers failed; the failures are
    in the returned report.
    """
    frame = frame or config.build_frame()
    output = config.output
    output.mkdir(parents=True, exist_ok=True)

    if verbose:
        print_frame_summary(config, frame)

    resolution = frame.resolution_at(config.ppi)
    frame.write_world_file(output / f"{frame.name}.pgw", resolution)
    frame.write_oziexplorer_map(output / f"{frame.name}.map", frame.name, f"{frame.name}.png", config.ppi)

    report = run_layers(
        frame,
        config.layer_specs(frame),
        policy=config.retry,
        fetch_tiles=fetch_tiles,
        vector_renderer=vector_renderer,
        cancel=cancel,
        verbose=verbose,
    )

    if verbose:
        print("\nWriting map files...")
    save_layer_images(frame, report.results, output, verbose=verbose)
    build_composite(frame, report.results, output / f"{frame.name}.svg", verbose=verbose)
    return report


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate a scaled, georeferenced map from imagery layers",
        epilog="""Examples:
  python generate_map.py
  python generate_map.py --config blue-mountains.json --output maps/
  python generate_map.py --workers 2 --quiet
""",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--config", default=CONFIG_FILE, help=f"Configuration file (default: {CONFIG_FILE})")
    parser.add_argument("--output", help="Output directory (overrides the configuration)")
    parser.add_argument("--workers", type=int, help="Concurrent tile requests per layer")
    parser.add_argument("--quiet", action="store_true", help="Only print errors")

    args = parser.parse_args(argv)
    verbose = not args.quiet

    try:
        data = load_config(args.config, verbose=verbose)
        if args.output:
            data["output"] = args.output
        if args.workers:
            data["workers"] = args.workers
        config = MapConfig.from_dict(data)

        if verbose:
            print("=" * 60)
            print(f"Generating map: {config.name}")
            print("=" * 60)
        frame = config.build_frame()
        report = generate_map(config, frame, verbose=verbose)
    except MapError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nInterrupted, partial downloads discarded", file=sys.stderr)
        return 130

    for failure in report.failures:
        print(f"  Layer failed: {failure.name}: {failure.error}", file=sys.stderr)
    for warning in report.warnings:
        if verbose:
            print(f"  Warning: {warning}")

    if verbose:
        print(f"\n{'=' * 60}")
        print(f"Map complete: {Path(config.output) / (config.name + '.svg')}")
        print(f"  {len(report.results)} layers rendered, {len(report.failures)} failed")
        print(f"{'=' * 60}\n")
    return 1 if report.failures else 0


if __name__ == "__main__":
    sys.exit(main())
