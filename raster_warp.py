"""
raster_warp.py - Resample georeferenced rasters onto a map frame

Wraps rasterio's warp so layers can be reprojected and rotated onto the
frame's pixel grid. Images are handled as RGBA PIL images at the edges and
as band-first uint8 arrays inside.
"""

from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import rasterio
from PIL import Image
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.errors import RasterioIOError
from rasterio.transform import Affine
from rasterio.warp import reproject

from errors import ConfigError
from map_frame import MapFrame


def image_to_array(image: Image.Image) -> np.ndarray:
    """RGBA image as a (4, height, width) uint8 array."""
    return np.ascontiguousarray(np.moveaxis(np.asarray(image.convert("RGBA")), -1, 0))


def array_to_image(array: np.ndarray) -> Image.Image:
    """(4, height, width) array as an RGBA image."""
    return Image.fromarray(np.ascontiguousarray(np.moveaxis(array.astype(np.uint8), 0, -1)), "RGBA")


def warp_to_frame(
    source: Image.Image,
    src_affine: Affine,
    src_crs: str,
    frame: MapFrame,
    resolution: float,
    resampling: Resampling = Resampling.cubic,
) -> Image.Image:
    """Resample an image onto the frame's (possibly rotated) pixel grid.

    Args:
        source: Georeferenced image
        src_affine: Pixel-corner affine of source in src_crs
        src_crs: CRS of the source image
        frame: Target map frame
        resolution: Target ground resolution in frame units
        resampling: rasterio resampling method

    Returns:
        RGBA image of frame.dimensions_at_resolution(resolution); areas
        outside the source are transparent
    """
    width, height = frame.dimensions_at_resolution(resolution)
    destination = np.zeros((4, height, width), dtype=np.uint8)
    reproject(
        source=image_to_array(source),
        destination=destination,
        src_transform=src_affine,
        src_crs=CRS.from_user_input(src_crs),
        dst_transform=frame.affine(resolution),
        dst_crs=CRS.from_user_input(frame.projection),
        resampling=resampling,
    )
    return array_to_image(destination)


def _to_rgba(data: np.ndarray, mask: np.ndarray) -> np.ndarray:
    if data.dtype != np.uint8:
        data = np.clip(data, 0, 255).astype(np.uint8)
    if data.shape[0] == 2:
        data = np.concatenate([data[:1], data[:1], data])
    elif data.shape[0] == 1:
        data = np.concatenate([data, data, data])
    if data.shape[0] == 3:
        data = np.concatenate([data, mask[np.newaxis].astype(np.uint8)])
    return data[:4]


def read_raster(path: Path, crs: Optional[str] = None) -> Tuple[Image.Image, Affine, str]:
    """Read a local georeferenced raster for embedding.

    Args:
        path: GeoTIFF, or an image with a world file beside it
        crs: CRS to assume when the file does not carry one

    Returns:
        (RGBA image, pixel-corner affine, CRS string)
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError("raster file not found", {"path": path})

    try:
        with rasterio.open(path) as src:
            data = src.read()
            mask = src.dataset_mask()
            affine = src.transform
            src_crs = src.crs.to_wkt() if src.crs else crs
    except RasterioIOError as e:
        raise ConfigError("cannot read raster", {"path": path, "error": e}) from e

    if src_crs is None:
        raise ConfigError("raster has no coordinate system; set the layer projection", {"path": path})
    return array_to_image(_to_rgba(data, mask)), affine, src_crs
