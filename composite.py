"""
composite.py - Write the finished map

The composite is an SVG sized in millimetres with one group per layer, each
holding its frame raster as an embedded PNG. Layer rasters can also be
written as separate PNG files with world files.
"""

import base64
import re
from io import BytesIO
from pathlib import Path
from typing import List, Sequence

import svgwrite

from layers import LayerResult
from map_frame import MapFrame
from map_utils import LayerManager


def _layer_id(name: str) -> str:
    """SVG-safe element id for a layer name."""
    safe = re.sub(r"[^A-Za-z0-9_.-]", "-", name)
    return safe if re.match(r"[A-Za-z_]", safe) else f"layer-{safe}"


def _png_data(result: LayerResult) -> str:
    buffer = BytesIO()
    result.image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


def build_composite(frame: MapFrame, results: Sequence[LayerResult], path: Path,
                    verbose: bool = True) -> Path:
    """Write the layers as an SVG map sized to the printed frame.

    Args:
        frame: Map frame
        results: Finished layers, bottom to top
        path: SVG file to write
        verbose: Print progress

    Returns:
        Path of the written SVG
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    width_mm, height_mm = frame.millimetres

    dwg = svgwrite.Drawing(
        str(path),
        size=(f"{width_mm}mm", f"{height_mm}mm"),
        viewBox=f"0 0 {width_mm} {height_mm}",
    )
    layers = LayerManager(dwg)

    for z_order, result in enumerate(results):
        group = layers.register_layer(_layer_id(result.name), z_order, opacity=result.opacity)
        mm_per_pixel = 1000.0 * result.resolution / frame.scale
        width_px, height_px = result.image.size
        group.add(dwg.image(
            href=f"data:image/png;base64,{_png_data(result)}",
            insert=(0, 0),
            size=(width_px * mm_per_pixel, height_px * mm_per_pixel),
        ))

    layers.assemble()
    dwg.save()

    if verbose:
        print(f"  Saved composite: {path} ({len(results)} layers, {width_mm:.0f}x{height_mm:.0f} mm)")
    return path


def save_layer_images(frame: MapFrame, results: Sequence[LayerResult], directory: Path,
                      verbose: bool = True) -> List[Path]:
    """Write each layer as <map>.<layer>.png with a world file beside it."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for result in results:
        png_path = directory / f"{frame.name}.{_layer_id(result.name)}.png"
        result.image.save(png_path, "PNG")
        frame.write_world_file(png_path.with_suffix(".pgw"), result.resolution)
        paths.append(png_path)
        if verbose:
            print(f"  Saved layer: {png_path}")
    return paths
