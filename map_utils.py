"""
Utility classes for scaled map generation.

This module provides reusable components for bounds management, rotation
handling, coordinate reprojection and SVG layer management.
"""

import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple, List, Dict, Optional, Any, Sequence, Callable

from pyproj import CRS, Transformer
from pyproj.enums import WktVersion
from shapely.geometry import box

Point = Tuple[float, float]

# reproject(source_crs, target_crs, points) -> points, same order and length
Reprojector = Callable[[str, str, Sequence[Point]], List[Point]]

WGS84 = "EPSG:4326"
EARTH_RADIUS = 6378137.0


@dataclass(frozen=True)
class Bounds:
    """Represents a rectangular bounds in a coordinate system.

    Attributes:
        min_x: Western/left boundary
        max_x: Eastern/right boundary
        min_y: Southern/bottom boundary
        max_y: Northern/top boundary
    """
    min_x: float
    max_x: float
    min_y: float
    max_y: float

    @classmethod
    def from_points(cls, points: Sequence[Point]) -> 'Bounds':
        """Smallest bounds containing all points."""
        xs = [x for x, _ in points]
        ys = [y for _, y in points]
        return cls(min_x=min(xs), max_x=max(xs), min_y=min(ys), max_y=max(ys))

    @property
    def width(self) -> float:
        """Width of the bounds (east-west extent)."""
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        """Height of the bounds (north-south extent)."""
        return self.max_y - self.min_y

    @property
    def center(self) -> Tuple[float, float]:
        """Center point of the bounds as (x, y)."""
        return (
            (self.min_x + self.max_x) / 2,
            (self.min_y + self.max_y) / 2
        )

    def corners(self) -> List[Point]:
        """Corners in order top-left, top-right, bottom-right, bottom-left."""
        return [
            (self.min_x, self.max_y),
            (self.max_x, self.max_y),
            (self.max_x, self.min_y),
            (self.min_x, self.min_y),
        ]

    def contains(self, x: float, y: float) -> bool:
        """Check if a point is within bounds."""
        return (self.min_x <= x <= self.max_x and
                self.min_y <= y <= self.max_y)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        """Return bounds as (min_x, min_y, max_x, max_y) tuple."""
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    def to_polygon(self):
        """Shapely polygon of the bounds."""
        return box(self.min_x, self.min_y, self.max_x, self.max_y)


def rotate_point(point: Point, angle: float) -> Point:
    """Rotate a point counter-clockwise about the origin by angle radians."""
    cos = math.cos(angle)
    sin = math.sin(angle)
    x, y = point
    return (x * cos - y * sin, x * sin + y * cos)


@dataclass(frozen=True)
class RotationConfig:
    """Rotation of a map frame about its centre.

    Centralizes all rotation-related calculations and provides helper methods
    for rotating points and calculating the envelope of a rotated rectangle.

    Attributes:
        angle_deg: Rotation angle in degrees (positive = counter-clockwise in
            projected coordinates, clockwise in SVG)
        center_x: X coordinate of rotation center
        center_y: Y coordinate of rotation center
    """
    angle_deg: float
    center_x: float = 0.0
    center_y: float = 0.0

    @property
    def angle_rad(self) -> float:
        """Rotation angle in radians."""
        return math.radians(self.angle_deg)

    @property
    def is_rotated(self) -> bool:
        """Check if any rotation is applied."""
        return self.angle_deg != 0

    @property
    def cos_angle(self) -> float:
        """Cosine of rotation angle."""
        return math.cos(self.angle_rad)

    @property
    def sin_angle(self) -> float:
        """Sine of rotation angle."""
        return math.sin(self.angle_rad)

    def rotate_point(self, x: float, y: float) -> Tuple[float, float]:
        """Rotate a point around the rotation center.

        Args:
            x: X coordinate of point to rotate
            y: Y coordinate of point to rotate

        Returns:
            Tuple of (rotated_x, rotated_y)
        """
        if not self.is_rotated:
            return (x, y)

        dx, dy = rotate_point((x - self.center_x, y - self.center_y), self.angle_rad)
        return (self.center_x + dx, self.center_y + dy)

    def rotated_envelope(self, width: float, height: float) -> Tuple[float, float]:
        """Size of the axis-aligned box around a rotated rectangle.

        Args:
            width: Width of the original rectangle
            height: Height of the original rectangle

        Returns:
            Tuple of (envelope_width, envelope_height)
        """
        if not self.is_rotated:
            return (width, height)

        # For rectangle W x H rotated by θ:
        #   rotated_width = |W * cos(θ)| + |H * sin(θ)|
        #   rotated_height = |W * sin(θ)| + |H * cos(θ)|
        abs_cos = abs(self.cos_angle)
        abs_sin = abs(self.sin_angle)

        return (
            width * abs_cos + height * abs_sin,
            width * abs_sin + height * abs_cos,
        )


def get_utm_crs(lon: float, lat: float) -> str:
    """Calculate the correct UTM CRS based on longitude and latitude."""
    # UTM zones are 6 degrees wide, starting from zone 1 at 180°W
    zone = int((lon + 180) / 6) + 1
    return utm_crs(zone, south=lat < 0)


def utm_crs(zone: int, south: bool = False) -> str:
    """EPSG code of a WGS84 UTM zone."""
    if not 1 <= zone <= 60:
        raise ValueError(f"UTM zone must be between 1 and 60, got {zone}")
    return f"EPSG:{327 if south else 326}{zone:02d}"


def transverse_mercator_crs(central_meridian: float, scale_factor: float = 1.0) -> str:
    """PROJ string for a transverse Mercator centred on a meridian."""
    return (
        f"+proj=tmerc +lat_0=0.0 +lon_0={central_meridian} +k={scale_factor} "
        "+x_0=500000.0 +y_0=10000000.0 +ellps=WGS84 +datum=WGS84 +units=m +no_defs"
    )


def esri_wkt(crs: str) -> str:
    """ESRI flavoured WKT, as expected by ArcGIS REST services."""
    return CRS.from_user_input(crs).to_wkt(WktVersion.WKT1_ESRI)


def projection_parameters(crs: str) -> Tuple[float, float]:
    """Central meridian and scale factor of a transverse Mercator CRS.

    Returns (0.0, 1.0) for coordinate systems without those parameters.
    """
    operation = CRS.from_user_input(crs).coordinate_operation
    params = {param.name: param.value for param in operation.params} if operation else {}
    return (
        float(params.get("Longitude of natural origin", 0.0)),
        float(params.get("Scale factor at natural origin", 1.0)),
    )


def default_projection(lonlat_points: Sequence[Point], utm: bool = False) -> str:
    """Working projection centred on the midpoint of some WGS84 points.

    Args:
        lonlat_points: (longitude, latitude) pairs
        utm: Use the UTM zone of the midpoint instead of a transverse
            Mercator on the midpoint's meridian

    Returns:
        CRS string usable with reproject()
    """
    lon, lat = Bounds.from_points(lonlat_points).center
    return get_utm_crs(lon, lat) if utm else transverse_mercator_crs(lon)


@lru_cache(maxsize=64)
def _transformer(source_crs: str, target_crs: str) -> Transformer:
    return Transformer.from_crs(source_crs, target_crs, always_xy=True)


class CoordinateTransformer:
    """Handles coordinate transformations between two reference systems.

    Axis order is always (x, y), i.e. (longitude, latitude) for geographic
    coordinate systems.

    Attributes:
        source_crs: CRS the input coordinates are in
        target_crs: CRS the output coordinates are in
    """

    def __init__(self, source_crs: str, target_crs: str):
        self.source_crs = source_crs
        self.target_crs = target_crs
        self._transformer = _transformer(source_crs, target_crs)

    def transform(self, x: float, y: float) -> Tuple[float, float]:
        """Transform a single point."""
        return self._transformer.transform(x, y)

    def transform_points(self, points: Sequence[Point]) -> List[Point]:
        """Transform points, preserving their order."""
        if not points:
            return []
        xs, ys = self._transformer.transform(
            [x for x, _ in points],
            [y for _, y in points],
        )
        return list(zip(xs, ys))

def reproject(source_crs: str, target_crs: str, points: Sequence[Point]) -> List[Point]:
    """Reproject points between coordinate systems.

    This is the default reprojection collaborator used by MapFrame.
    """
    if source_crs == target_crs:
        return [(float(x), float(y)) for x, y in points]
    return CoordinateTransformer(source_crs, target_crs).transform_points(points)


class LayerManager:
    """Manages SVG layer groups and their z-ordering.

    Layers are registered with a z-order value (higher = on top).

    Attributes:
        layers: Dictionary mapping layer ID to layer info
    """

    def __init__(self, dwg):
        """Initialize the layer manager.

        Args:
            dwg: svgwrite Drawing object
        """
        self.dwg = dwg
        self.layers: Dict[str, Dict[str, Any]] = {}

    def register_layer(
        self,
        layer_id: str,
        z_order: int,
        visible: bool = True,
        opacity: Optional[float] = None
    ) -> Any:
        """Register and create a new layer group.

        Args:
            layer_id: Unique identifier for the layer
            z_order: Stacking order (higher values render on top)
            visible: Whether the layer is visible by default
            opacity: Optional group opacity between 0 and 1

        Returns:
            The created SVG group element
        """
        if layer_id in self.layers:
            raise ValueError(f"Layer already registered: {layer_id}")

        group = self.dwg.g(id=layer_id)

        if not visible:
            group['visibility'] = 'hidden'

        if opacity is not None and opacity < 1:
            group['style'] = f"opacity:{opacity}"

        self.layers[layer_id] = {
            'group': group,
            'z_order': z_order,
            'visible': visible
        }
        return group

    def get_layers_by_z_order(self) -> List[Any]:
        """Get layers sorted by z-order (lowest first)."""
        sorted_layers = sorted(self.layers.values(), key=lambda info: info['z_order'])
        return [info['group'] for info in sorted_layers]

    def assemble(self, parent=None, skip_empty: bool = True):
        """Add registered layers to a parent element in z-order.

        Args:
            parent: Element to add layers to (defaults to the drawing)
            skip_empty: Leave out groups without any children
        """
        parent = self.dwg if parent is None else parent
        for group in self.get_layers_by_z_order():
            if skip_empty and not group.elements:
                continue
            parent.add(group)
