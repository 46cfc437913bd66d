"""
mosaic.py - Assemble fetched tile images into one georeferenced canvas

Tiles are cropped to their usable region and pasted at their planned pixel
offsets. Where tiles overlap the first tile placed wins. Each tile can also
be georeferenced on its own for an external warp onto a rotated frame.
"""

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Mapping, Tuple, Union

from PIL import Image, UnidentifiedImageError
from rasterio.transform import Affine

from errors import AssemblyInconsistent
from map_frame import MapFrame
from tile_grid import TileDescriptor, TileGridPlan, TileIndex

TileImage = Union[bytes, Image.Image]

# Relative difference below which two resolutions are the same grid
GRID_TOLERANCE = 1e-9


@dataclass(frozen=True)
class Mosaic:
    """Canvas size and tile placements for one layer.

    Attributes:
        dimensions: Canvas (width, height) in pixels
        origin: Canvas top-left corner in the planning CRS
        resolution: Ground size of one canvas pixel
        placements: Canvas box (x0, y0, x1, y1) per tile index
    """
    dimensions: Tuple[int, int]
    origin: Tuple[float, float]
    resolution: float
    placements: Dict[TileIndex, Tuple[int, int, int, int]]

    def placement(self, tile: TileDescriptor) -> Tuple[int, int, int, int]:
        return self.placements[tile.index]

    @property
    def affine(self) -> Affine:
        return Affine.translation(*self.origin) * Affine.scale(self.resolution, -self.resolution)


class MosaicAssembler:
    """Builds the canvas for a TileGridPlan from fetched tile images."""

    def __init__(self, plan: TileGridPlan):
        self.plan = plan

    def layout(self) -> Mosaic:
        """Canvas geometry and tile placements of the plan."""
        return Mosaic(
            dimensions=self.plan.dimensions,
            origin=self.plan.origin,
            resolution=self.plan.resolution,
            placements={tile.index: tile.placement for tile in self.plan.tiles},
        )

    def check_tile(self, tile: TileDescriptor, size: Tuple[int, int]) -> None:
        """Raise AssemblyInconsistent unless an image has the planned size."""
        if tuple(size) != tuple(tile.pixel_size):
            raise AssemblyInconsistent(
                "tile image size does not match its descriptor",
                {"tile": tile.index, "expected": tile.pixel_size, "actual": tuple(size)},
            )

    def decode(self, tile: TileDescriptor, data: TileImage) -> Image.Image:
        """Usable RGBA pixels of a fetched tile.

        Args:
            tile: Descriptor the image was fetched for
            data: Encoded image bytes or an already opened PIL image

        Returns:
            RGBA image cropped to the tile's usable region
        """
        if isinstance(data, Image.Image):
            image = data
        else:
            try:
                image = Image.open(BytesIO(data))
                image.load()
            except (UnidentifiedImageError, OSError) as e:
                raise AssemblyInconsistent(
                    "tile data is not a readable image",
                    {"tile": tile.index, "error": e},
                ) from e

        self.check_tile(tile, image.size)
        return image.convert("RGBA").crop(tile.crop_box)

    def composite(self, images: Mapping[TileIndex, TileImage]) -> Image.Image:
        """Paste every tile onto a transparent canvas.

        Images may arrive in any order; they are placed in plan order and
        pixels already on the canvas are kept where tiles overlap.

        Args:
            images: Fetched image per tile index

        Returns:
            RGBA canvas of the plan's dimensions
        """
        missing = [tile.index for tile in self.plan.tiles if tile.index not in images]
        if missing:
            raise AssemblyInconsistent("planned tiles have no image", {"tiles": missing})
        planned = {tile.index for tile in self.plan.tiles}
        unexpected = [index for index in images if index not in planned]
        if unexpected:
            raise AssemblyInconsistent("images for tiles not in the plan", {"tiles": unexpected})

        mosaic = self.layout()
        canvas = Image.new("RGBA", tuple(mosaic.dimensions), (0, 0, 0, 0))
        for tile in self.plan.tiles:
            piece = self.decode(tile, images[tile.index])
            box = mosaic.placement(tile)
            existing = canvas.crop(box)
            canvas.paste(Image.alpha_composite(piece, existing), box[:2])
        return canvas

    def tile_affine(self, tile: TileDescriptor) -> Affine:
        """Pixel-corner affine of a tile's usable (cropped) image."""
        usable = tile.usable_bounds
        return Affine.translation(usable.min_x, usable.max_y) * Affine.scale(tile.resolution, -tile.resolution)

    def tile_world_file(self, tile: TileDescriptor) -> Tuple[float, ...]:
        """World file parameters of a tile's usable image."""
        centred = self.tile_affine(tile) * Affine.translation(0.5, 0.5)
        return (centred.a, centred.d, centred.b, centred.e, centred.c, centred.f)

    def write_tiles(self, images: Mapping[TileIndex, TileImage], directory: Path) -> List[Path]:
        """Write each usable tile as PNG with a .pgw world file beside it.

        Returns:
            Paths of the written PNG files, in plan order
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        paths = []
        for tile in self.plan.tiles:
            if tile.index not in images:
                raise AssemblyInconsistent("planned tile has no image", {"tile": tile.index})
            column, row = tile.index
            png_path = directory / f"tile.{column}.{row}.png"
            self.decode(tile, images[tile.index]).save(png_path, "PNG")
            png_path.with_suffix(".pgw").write_text(
                "\n".join(repr(value) for value in self.tile_world_file(tile)) + "\n"
            )
            paths.append(png_path)
        return paths

    def needs_warp(self, frame: MapFrame, crs: str, resolution: float) -> bool:
        """Whether the canvas must be resampled to become the frame raster.

        Args:
            frame: Map frame the layer is drawn for
            crs: CRS the plan was made in
            resolution: Frame raster resolution
        """
        if frame.rotation != 0 or self.plan.zoom is not None or crs != frame.projection:
            return True
        if abs(self.plan.resolution - resolution) > GRID_TOLERANCE * resolution:
            return True
        top_left = (frame.bounds.min_x, frame.bounds.max_y)
        return any(
            abs(a - b) > GRID_TOLERANCE * max(1.0, abs(b)) for a, b in zip(self.plan.origin, top_left)
        ) or tuple(self.plan.dimensions) != frame.dimensions_at_resolution(resolution)
