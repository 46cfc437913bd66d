"""
tile_grid.py - Partition map bounds into fetchable image tiles

Two strategies:
  - Fixed grid: a REST export service with a maximum request size. The
    bounds are split into tiles of at most max_tile_size pixels, with crop
    margins requested around interior tiles and trimmed after download.
  - Zoom ladder: a slippy tile pyramid. The finest zoom whose tile count
    stays under the budget is chosen and the grid cells covering the bounds
    are requested.

Planning is pure: no I/O, no printing.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from rasterio.transform import Affine
from shapely.ops import unary_union

from errors import PlanningInfeasible
from map_utils import EARTH_RADIUS, Bounds, Point

# Fractions of a pixel treated as exact when snapping to the pixel grid
PIXEL_TOLERANCE = 1e-6

Margins = Tuple[Tuple[int, int], Tuple[int, int]]
TileIndex = Tuple[int, int]


def _pixels(extent: float, resolution: float) -> int:
    return max(1, math.ceil(extent / resolution - PIXEL_TOLERANCE))


@dataclass(frozen=True)
class ZoomLadder:
    """Discrete resolutions of a tile pyramid, halving at each zoom.

    Attributes:
        origin: Top-left corner of the zoom 0 grid in the planning CRS
        base_resolution: Ground resolution at zoom 0
        min_zoom: Coarsest zoom the service provides
        max_zoom: Finest zoom the service provides
    """
    origin: Point
    base_resolution: float
    min_zoom: int = 0
    max_zoom: int = 19

    def __post_init__(self):
        if self.base_resolution <= 0:
            raise ValueError(f"base_resolution must be positive, got {self.base_resolution}")
        if self.min_zoom > self.max_zoom:
            raise ValueError(f"min_zoom {self.min_zoom} exceeds max_zoom {self.max_zoom}")

    @classmethod
    def web_mercator(cls, min_zoom: int = 0, max_zoom: int = 19) -> 'ZoomLadder':
        """The EPSG:3857 pyramid of 256 pixel tiles used by slippy map servers."""
        half_world = math.pi * EARTH_RADIUS
        return cls(
            origin=(-half_world, half_world),
            base_resolution=2 * half_world / 256,
            min_zoom=min_zoom,
            max_zoom=max_zoom,
        )

    def resolution(self, zoom: int) -> float:
        return self.base_resolution / 2 ** zoom

    @property
    def resolutions(self) -> List[float]:
        return [self.resolution(zoom) for zoom in range(self.min_zoom, self.max_zoom + 1)]

    def zoom_for(self, resolution: float) -> int:
        """Coarsest zoom at least as fine as resolution, clamped to the ladder."""
        zoom = math.ceil(math.log2(self.base_resolution / resolution) - PIXEL_TOLERANCE)
        return min(max(zoom, self.min_zoom), self.max_zoom)


@dataclass(frozen=True)
class TileGridConstraints:
    """Tiling limits of an imagery service.

    Attributes:
        max_tile_size: Largest (width, height) in pixels a single request may ask for
        crop_margins: ((left, right), (top, bottom)) pixels trimmed from each tile
        tile_count_budget: Tile count a zoom ladder plan must stay below
        zoom_ladder: Discrete resolutions the service offers, if any
    """
    max_tile_size: Tuple[int, int]
    crop_margins: Margins = ((0, 0), (0, 0))
    tile_count_budget: Optional[int] = None
    zoom_ladder: Optional[ZoomLadder] = None

    def __post_init__(self):
        if any(margin < 0 for pair in self.crop_margins for margin in pair):
            raise ValueError(f"Crop margins must be non-negative, got {self.crop_margins}")
        if min(self.usable_tile_size) <= 0:
            raise ValueError(
                f"Tile size {self.max_tile_size} leaves nothing after cropping {self.crop_margins}"
            )
        if self.tile_count_budget is not None and self.tile_count_budget <= 0:
            raise ValueError(f"tile_count_budget must be positive, got {self.tile_count_budget}")

    @property
    def usable_tile_size(self) -> Tuple[int, int]:
        """Tile size left after trimming the crop margins."""
        return tuple(size - sum(crop) for size, crop in zip(self.max_tile_size, self.crop_margins))


@dataclass(frozen=True)
class TileDescriptor:
    """One tile request and where its usable pixels go.

    Attributes:
        index: (column, row); global grid indices for zoom ladder plans
        geo_bounds: Requested area in the planning CRS, margins included
        pixel_size: Requested image (width, height), margins included
        pixel_offset: Canvas position of the tile's usable top-left pixel
        resolution: Ground size of one pixel
        crop: (left, top, right, bottom) pixels to trim after download
        zoom: Zoom level for zoom ladder plans
    """
    index: TileIndex
    geo_bounds: Bounds
    pixel_size: Tuple[int, int]
    pixel_offset: Tuple[int, int]
    resolution: float
    crop: Tuple[int, int, int, int] = (0, 0, 0, 0)
    zoom: Optional[int] = None

    @property
    def usable_size(self) -> Tuple[int, int]:
        left, top, right, bottom = self.crop
        return (self.pixel_size[0] - left - right, self.pixel_size[1] - top - bottom)

    @property
    def placement(self) -> Tuple[int, int, int, int]:
        """Canvas box (x0, y0, x1, y1) covered by the usable pixels."""
        x, y = self.pixel_offset
        width, height = self.usable_size
        return (x, y, x + width, y + height)

    @property
    def crop_box(self) -> Tuple[int, int, int, int]:
        """Box of the usable pixels inside the fetched image, PIL order."""
        left, top, right, bottom = self.crop
        return (left, top, self.pixel_size[0] - right, self.pixel_size[1] - bottom)

    @property
    def usable_bounds(self) -> Bounds:
        left, top, right, bottom = self.crop
        r = self.resolution
        return Bounds(
            min_x=self.geo_bounds.min_x + left * r,
            max_x=self.geo_bounds.max_x - right * r,
            min_y=self.geo_bounds.min_y + bottom * r,
            max_y=self.geo_bounds.max_y - top * r,
        )


@dataclass(frozen=True)
class TileGridPlan:
    """Ordered tiles for one layer plus the canvas they assemble into.

    Attributes:
        tiles: Tile descriptors in row-major order
        bounds: Requested bounds in the planning CRS
        origin: Canvas top-left corner in the planning CRS
        resolution: Ground size of one canvas pixel
        dimensions: Canvas (width, height) in pixels
        zoom: Chosen zoom for zoom ladder plans
        tile_count_budget: Budget the plan was made against
        feasible: False when no zoom met the budget
    """
    tiles: Tuple[TileDescriptor, ...]
    bounds: Bounds
    origin: Point
    resolution: float
    dimensions: Tuple[int, int]
    zoom: Optional[int] = None
    tile_count_budget: Optional[int] = None
    feasible: bool = True
    _by_index: Dict[TileIndex, TileDescriptor] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_by_index", {tile.index: tile for tile in self.tiles})

    @property
    def tile_count(self) -> int:
        return len(self.tiles)

    @property
    def affine(self) -> Affine:
        """Pixel-corner affine transform of the assembled canvas."""
        return Affine.translation(*self.origin) * Affine.scale(self.resolution, -self.resolution)

    def by_index(self, index: TileIndex) -> TileDescriptor:
        return self._by_index[index]

    def warning(self) -> Optional[PlanningInfeasible]:
        """The budget overrun as an error value, or None for a feasible plan."""
        if self.feasible:
            return None
        return PlanningInfeasible(
            "no zoom level stays within the tile budget, using the coarsest",
            {"zoom": self.zoom, "tiles": self.tile_count, "budget": self.tile_count_budget},
        )

    def check(self) -> List[str]:
        """Verify the plan's geometric invariants.

        Returns:
            Descriptions of every violated invariant; empty when the plan is
            consistent.
        """
        problems = []
        for tile in self.tiles:
            if min(tile.pixel_size) <= 0 or min(tile.usable_size) <= 0:
                problems.append(f"tile {tile.index} has empty size {tile.pixel_size}")

        if not self.tiles:
            return problems + ["plan has no tiles"]

        tolerance = 0.01 * self.resolution
        covered = unary_union([tile.usable_bounds.to_polygon() for tile in self.tiles])
        if not covered.buffer(tolerance).covers(self.bounds.to_polygon()):
            problems.append("tiles do not cover the requested bounds")

        columns = sorted({tile.index[0] for tile in self.tiles})
        rows = sorted({tile.index[1] for tile in self.tiles})
        width = sum(self.by_index((column, rows[0])).usable_size[0] for column in columns)
        height = sum(self.by_index((columns[0], row)).usable_size[1] for row in rows)
        if (width, height) != tuple(self.dimensions):
            problems.append(f"usable tile sizes sum to {(width, height)}, canvas is {self.dimensions}")

        for tile in self.tiles:
            usable = tile.usable_bounds
            x = (usable.min_x - self.origin[0]) / self.resolution
            y = (self.origin[1] - usable.max_y) / self.resolution
            if abs(x - tile.pixel_offset[0]) > 1 or abs(y - tile.pixel_offset[1]) > 1:
                problems.append(f"tile {tile.index} bounds map to pixel {(x, y)}, planned {tile.pixel_offset}")
        return problems


def split_axis(total: int, usable: int) -> List[int]:
    """Usable tile sizes along one axis.

    Every tile but the last is usable pixels long; the last takes the rest.

    Args:
        total: Canvas pixels along the axis (at least 1)
        usable: Usable pixels per tile

    Returns:
        Tile sizes summing to total
    """
    if total < 1 or usable < 1:
        raise ValueError(f"Cannot split {total} pixels into tiles of {usable}")
    return [usable] * ((total - 1) // usable) + [1 + (total - 1) % usable]


def _axis_tiles(total: int, usable: int, margins: Tuple[int, int]):
    """(offset, usable size, low margin, high margin) of each tile along an axis."""
    sizes = split_axis(total, usable)
    low, high = margins
    offset = 0
    tiles = []
    for number, size in enumerate(sizes):
        tiles.append((
            offset,
            size,
            low if number > 0 else 0,
            high if number < len(sizes) - 1 else 0,
        ))
        offset += size
    return tiles


def plan_fixed_grid(bounds: Bounds, resolution: float, constraints: TileGridConstraints) -> TileGridPlan:
    """Split bounds into a grid of tiles no larger than the service maximum.

    Interior tiles request their crop margins on both sides so neighbouring
    tiles overlap only where pixels are trimmed; tiles on the edge of the
    grid do not reach beyond the canvas.

    Args:
        bounds: Area to cover in the planning CRS
        resolution: Ground size of one pixel
        constraints: Service tiling limits

    Returns:
        TileGridPlan with tiles in row-major order
    """
    if resolution <= 0:
        raise ValueError(f"resolution must be positive, got {resolution}")

    dimensions = (_pixels(bounds.width, resolution), _pixels(bounds.height, resolution))
    origin = (bounds.min_x, bounds.max_y)
    columns = _axis_tiles(dimensions[0], constraints.usable_tile_size[0], constraints.crop_margins[0])
    rows = _axis_tiles(dimensions[1], constraints.usable_tile_size[1], constraints.crop_margins[1])

    tiles = []
    for row, (y, height, top, bottom) in enumerate(rows):
        for column, (x, width, left, right) in enumerate(columns):
            geo_bounds = Bounds(
                min_x=origin[0] + (x - left) * resolution,
                max_x=origin[0] + (x + width + right) * resolution,
                min_y=origin[1] - (y + height + bottom) * resolution,
                max_y=origin[1] - (y - top) * resolution,
            )
            tiles.append(TileDescriptor(
                index=(column, row),
                geo_bounds=geo_bounds,
                pixel_size=(left + width + right, top + height + bottom),
                pixel_offset=(x, y),
                resolution=resolution,
                crop=(left, top, right, bottom),
            ))

    return TileGridPlan(
        tiles=tuple(tiles),
        bounds=bounds,
        origin=origin,
        resolution=resolution,
        dimensions=dimensions,
    )


def _grid_range(low: float, high: float, cell: float) -> Tuple[int, int]:
    first = math.floor(low / cell + PIXEL_TOLERANCE)
    last = math.ceil(high / cell - PIXEL_TOLERANCE) - 1
    return first, max(first, last)


def _cell_ranges(bounds: Bounds, origin: Point, resolution: float,
                 usable_tile_size: Tuple[int, int]) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    """First and last column and row of the grid cells touching bounds."""
    ox, oy = origin
    cell_x, cell_y = usable_tile_size[0] * resolution, usable_tile_size[1] * resolution
    return (
        _grid_range(bounds.min_x - ox, bounds.max_x - ox, cell_x),
        _grid_range(oy - bounds.max_y, oy - bounds.min_y, cell_y),
    )


def tile_count(bounds: Bounds, resolution: float, usable_tile_size: Tuple[int, int],
               origin: Point = (0.0, 0.0)) -> int:
    """Grid cells anchored at origin that a plan covering bounds fetches."""
    (first_column, last_column), (first_row, last_row) = _cell_ranges(
        bounds, origin, resolution, usable_tile_size)
    return (last_column - first_column + 1) * (last_row - first_row + 1)


def plan_zoom_grid(bounds: Bounds, resolution: float, constraints: TileGridConstraints) -> TileGridPlan:
    """Choose a zoom from the ladder and cover bounds with its grid cells.

    Starting from the zoom matching the requested resolution, coarser zooms
    are tried until the tile count drops below the budget. If none does,
    the coarsest zoom is used and the plan is flagged infeasible.

    Args:
        bounds: Area to cover in the ladder's CRS
        resolution: Requested ground size of one pixel
        constraints: Service limits including a zoom ladder

    Returns:
        TileGridPlan with global tile indices in row-major order
    """
    ladder = constraints.zoom_ladder
    if ladder is None:
        raise ValueError("zoom grid planning needs a zoom ladder")
    if resolution <= 0:
        raise ValueError(f"resolution must be positive, got {resolution}")

    usable = constraints.usable_tile_size
    budget = constraints.tile_count_budget
    feasible = True
    for zoom in range(ladder.zoom_for(resolution), ladder.min_zoom - 1, -1):
        count = tile_count(bounds, ladder.resolution(zoom), usable, ladder.origin)
        if budget is None or count < budget:
            break
    else:
        zoom = ladder.min_zoom
        feasible = False

    zoom_resolution = ladder.resolution(zoom)
    cell_x, cell_y = usable[0] * zoom_resolution, usable[1] * zoom_resolution
    ox, oy = ladder.origin
    (first_column, last_column), (first_row, last_row) = _cell_ranges(
        bounds, ladder.origin, zoom_resolution, usable)

    (left, right), (top, bottom) = constraints.crop_margins
    origin = (ox + first_column * cell_x, oy - first_row * cell_y)
    tiles = []
    for row in range(first_row, last_row + 1):
        for column in range(first_column, last_column + 1):
            geo_bounds = Bounds(
                min_x=ox + column * cell_x - left * zoom_resolution,
                max_x=ox + (column + 1) * cell_x + right * zoom_resolution,
                min_y=oy - (row + 1) * cell_y - bottom * zoom_resolution,
                max_y=oy - row * cell_y + top * zoom_resolution,
            )
            tiles.append(TileDescriptor(
                index=(column, row),
                geo_bounds=geo_bounds,
                pixel_size=constraints.max_tile_size,
                pixel_offset=((column - first_column) * usable[0], (row - first_row) * usable[1]),
                resolution=zoom_resolution,
                crop=(left, top, right, bottom),
                zoom=zoom,
            ))

    return TileGridPlan(
        tiles=tuple(tiles),
        bounds=bounds,
        origin=origin,
        resolution=zoom_resolution,
        dimensions=(
            (last_column - first_column + 1) * usable[0],
            (last_row - first_row + 1) * usable[1],
        ),
        zoom=zoom,
        tile_count_budget=budget,
        feasible=feasible,
    )


def plan_tiles(bounds: Bounds, resolution: float, constraints: TileGridConstraints) -> TileGridPlan:
    """Plan with the zoom ladder when the service has one, else a fixed grid."""
    if constraints.zoom_ladder is not None:
        return plan_zoom_grid(bounds, resolution, constraints)
    return plan_fixed_grid(bounds, resolution, constraints)
