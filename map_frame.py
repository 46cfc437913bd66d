"""
map_frame.py - Geometric identity of a printed map

A MapFrame is a (possibly rotated) rectangle in a projected coordinate
system at a given print scale. All downloads cover the frame's bounds, the
axis-aligned envelope of the rotated rectangle.
"""

import math
from dataclasses import dataclass, field
from itertools import product
from pathlib import Path
from typing import Sequence, Tuple, Union

from rasterio.transform import Affine

from bounding_box import minimum_bounding_box
from errors import ConfigError, GeometryDegenerate
from map_utils import (
    WGS84,
    Bounds,
    Point,
    Reprojector,
    RotationConfig,
    default_projection,
    projection_parameters,
    reproject as default_reproject,
    rotate_point,
    utm_crs,
)

METRES_PER_INCH = 0.0254
MAX_ROTATION_DEG = 45.0

# Extents within this many pixels of a whole number are not rounded up
PIXEL_TOLERANCE = 1e-6

Rotation = Union[float, str]


def _ceil(value: float) -> int:
    return max(1, math.ceil(value - PIXEL_TOLERANCE))


def check_rotation(rotation) -> float:
    """Validate a fixed map rotation in degrees."""
    if isinstance(rotation, str) or rotation is None:
        raise ConfigError(f"map rotation must be a number of degrees, got {rotation!r}")
    if abs(rotation) > MAX_ROTATION_DEG:
        raise ConfigError(
            "map rotation must be between -45 and +45 degrees",
            {"rotation": rotation},
        )
    return float(rotation)


@dataclass(frozen=True)
class MapFrame:
    """A map's projected centre, extents and rotation.

    Attributes:
        name: Map name, used for output file names
        scale: Print scale denominator (e.g. 25000 for 1:25,000)
        projection: CRS of the projected working coordinates
        centre: Frame centre in projected coordinates
        extents: (width, height) of the frame in projected units
        rotation: Counter-clockwise rotation of the frame in degrees
        bounds: Axis-aligned envelope of the rotated frame (derived)
    """
    name: str
    scale: float
    projection: str
    centre: Point
    extents: Tuple[float, float]
    rotation: float = 0.0
    reproject: Reprojector = field(default=default_reproject, repr=False, compare=False)
    bounds: Bounds = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.scale <= 0:
            raise ValueError(f"Map scale must be positive, got {self.scale}")
        if len(self.extents) != 2 or min(self.extents) < 0:
            raise ValueError(f"Map extents must be two non-negative values, got {self.extents}")
        check_rotation(self.rotation)

        width, height = self.rotation_config.rotated_envelope(*self.extents)
        cx, cy = self.centre
        object.__setattr__(self, "bounds", Bounds(
            min_x=cx - 0.5 * width,
            max_x=cx + 0.5 * width,
            min_y=cy - 0.5 * height,
            max_y=cy + 0.5 * height,
        ))

    # === Construction ===

    @classmethod
    def from_size(
        cls,
        name: str,
        scale: float,
        size_mm: Sequence[float],
        centre: Point,
        rotation: Rotation = 0.0,
        projection: str = None,
        utm: bool = False,
        reproject: Reprojector = default_reproject,
    ) -> 'MapFrame':
        """Frame of a given paper size centred on a WGS84 position.

        Args:
            name: Map name
            scale: Print scale denominator
            size_mm: (width, height) of the printed map in millimetres
            centre: (longitude, latitude) of the map centre
            rotation: Rotation in degrees; "auto" is not allowed here
            projection: Working CRS (defaults to a projection on the centre)
            utm: Default to the centre's UTM zone
            reproject: Reprojection collaborator
        """
        sizes = tuple(float(size) for size in size_mm)
        if len(sizes) != 2 or not all(size > 0 for size in sizes):
            raise ConfigError("invalid map size", {"size": size_mm})
        if rotation == "auto":
            raise ConfigError("cannot specify map size and auto-rotation together")
        rotation = check_rotation(rotation)

        projection = projection or default_projection([centre], utm)
        (projected_centre,) = reproject(WGS84, projection, [centre])
        return cls(
            name=name,
            scale=scale,
            projection=projection,
            centre=tuple(projected_centre),
            extents=tuple(size * 0.001 * scale for size in sizes),
            rotation=rotation,
            reproject=reproject,
        )

    @classmethod
    def from_utm_centre(
        cls,
        name: str,
        scale: float,
        size_mm: Sequence[float],
        zone: int,
        easting: float,
        northing: float,
        south: bool = False,
        rotation: Rotation = 0.0,
        projection: str = None,
        utm: bool = False,
        reproject: Reprojector = default_reproject,
    ) -> 'MapFrame':
        """Frame of a given paper size centred on a UTM position."""
        (centre,) = reproject(utm_crs(zone, south), WGS84, [(easting, northing)])
        return cls.from_size(name, scale, size_mm, centre, rotation, projection, utm, reproject)

    @classmethod
    def from_extremes(
        cls,
        name: str,
        scale: float,
        longitudes: Sequence[float],
        latitudes: Sequence[float],
        rotation: float = 0.0,
        margin_mm: float = 0.0,
        projection: str = None,
        utm: bool = False,
        reproject: Reprojector = default_reproject,
    ) -> 'MapFrame':
        """Frame around the rectangle spanned by extreme longitudes and latitudes."""
        if rotation == "auto":
            raise ConfigError("auto-rotation needs a point set, not explicit bounds")
        corners = list(product(longitudes, latitudes))
        return cls._fit(name, scale, corners, rotation, margin_mm, projection, utm, reproject)

    @classmethod
    def from_utm_extremes(
        cls,
        name: str,
        scale: float,
        zone: int,
        eastings: Sequence[float],
        northings: Sequence[float],
        south: bool = False,
        rotation: float = 0.0,
        margin_mm: float = 0.0,
        projection: str = None,
        utm: bool = False,
        reproject: Reprojector = default_reproject,
    ) -> 'MapFrame':
        """Frame around the rectangle spanned by extreme UTM eastings and northings."""
        if rotation == "auto":
            raise ConfigError("auto-rotation needs a point set, not explicit bounds")
        corners = reproject(utm_crs(zone, south), WGS84, list(product(eastings, northings)))
        return cls._fit(name, scale, corners, rotation, margin_mm, projection, utm, reproject)

    @classmethod
    def from_points(
        cls,
        name: str,
        scale: float,
        points: Sequence[Point],
        rotation: Rotation = 0.0,
        margin_mm: float = 0.0,
        projection: str = None,
        utm: bool = False,
        reproject: Reprojector = default_reproject,
    ) -> 'MapFrame':
        """Frame fitted around WGS84 points, e.g. a track or waypoints.

        Args:
            name: Map name
            scale: Print scale denominator
            points: (longitude, latitude) pairs
            rotation: Fixed rotation in degrees, or "auto" for the
                minimum-area rectangle around the points
            margin_mm: Paper margin added on every side
            projection: Working CRS (defaults to a projection on the points)
            utm: Default to the UTM zone of the points
            reproject: Reprojection collaborator
        """
        return cls._fit(name, scale, list(points), rotation, margin_mm, projection, utm, reproject)

    @classmethod
    def _fit(cls, name, scale, lonlat_points, rotation, margin_mm, projection, utm, reproject):
        if not lonlat_points:
            raise GeometryDegenerate("no points to fit the map frame around")

        projection = projection or default_projection(lonlat_points, utm)
        projected = reproject(WGS84, projection, lonlat_points)

        if rotation == "auto":
            rect = minimum_bounding_box(projected)
            (width, height), angle = rect.frame_orientation()
            centre = rect.centre
            rotation = math.degrees(angle)
        else:
            rotation = check_rotation(rotation)
            angle = math.radians(rotation)
            unrotated = Bounds.from_points([rotate_point(point, -angle) for point in projected])
            centre = rotate_point(unrotated.center, angle)
            width, height = unrotated.width, unrotated.height

        margin = 2 * margin_mm * 0.001 * scale
        extents = (width + margin, height + margin)
        if min(extents) <= 0:
            raise GeometryDegenerate(
                "points do not span an area; supply more points or a margin",
                {"points": len(lonlat_points), "extents": extents},
            )

        return cls(
            name=name,
            scale=scale,
            projection=projection,
            centre=tuple(centre),
            extents=extents,
            rotation=rotation,
            reproject=reproject,
        )

    # === Geometry ===

    @property
    def rotation_config(self) -> RotationConfig:
        return RotationConfig(angle_deg=self.rotation, center_x=self.centre[0], center_y=self.centre[1])

    @property
    def millimetres(self) -> Tuple[float, float]:
        """Printed size of the frame in millimetres."""
        return tuple(1000.0 * extent / self.scale for extent in self.extents)

    def corners(self) -> list:
        """Rotated frame corners: top-left, top-right, bottom-right, bottom-left."""
        half_w, half_h = 0.5 * self.extents[0], 0.5 * self.extents[1]
        cx, cy = self.centre
        return [
            self.rotation_config.rotate_point(cx + dx, cy + dy)
            for dx, dy in [(-half_w, half_h), (half_w, half_h), (half_w, -half_h), (-half_w, -half_h)]
        ]

    @property
    def top_left(self) -> Point:
        return self.corners()[0]

    def transform_bounds_to(self, crs: str) -> Bounds:
        """Envelope of the frame bounds reprojected into another CRS."""
        return Bounds.from_points(self.reproject(self.projection, crs, self.bounds.corners()))

    def wgs84_bounds(self) -> Bounds:
        return self.transform_bounds_to(WGS84)

    # === Raster sizing and georeferencing ===

    def resolution_at(self, ppi: float) -> float:
        """Ground distance per pixel when printed at ppi."""
        return self.scale * METRES_PER_INCH / ppi

    def dimensions_at(self, ppi: float) -> Tuple[int, int]:
        """Pixel size of the frame when printed at ppi."""
        return tuple(_ceil(ppi * extent / self.scale / METRES_PER_INCH) for extent in self.extents)

    def dimensions_at_resolution(self, resolution: float) -> Tuple[int, int]:
        """Pixel size of the frame at a ground resolution."""
        return tuple(_ceil(extent / resolution) for extent in self.extents)

    def affine(self, resolution: float) -> Affine:
        """Pixel-corner affine transform of a frame-aligned raster."""
        return (
            Affine.translation(*self.top_left)
            * Affine.rotation(self.rotation)
            * Affine.scale(resolution, -resolution)
        )

    def world_file_parameters(self, resolution: float) -> Tuple[float, ...]:
        """The six world file lines for a frame-aligned raster.

        Returns:
            (x-scale, rotation term, rotation term, negative y-scale,
            top-left pixel centre x, top-left pixel centre y)
        """
        centred = self.affine(resolution) * Affine.translation(0.5, 0.5)
        return (centred.a, centred.d, centred.b, centred.e, centred.c, centred.f)

    def write_world_file(self, path: Path, resolution: float) -> Path:
        path = Path(path)
        path.write_text("\n".join(repr(value) for value in self.world_file_parameters(resolution)) + "\n")
        return path

    def oziexplorer_map(self, name: str, image: str, ppi: float) -> str:
        """OziExplorer .map calibration for the frame-aligned image at ppi."""
        width, height = self.dimensions_at(ppi)
        pixel_corners = [(0, 0), (width, 0), (width, height), (0, height)]
        wgs84_corners = self.reproject(self.projection, WGS84, self.corners())
        central_meridian, scale_factor = projection_parameters(self.projection)

        def degrees_minutes(coord, positive, negative):
            return (int(math.floor(abs(coord))), 60 * (abs(coord) - math.floor(abs(coord))),
                    positive if coord > 0 else negative)

        calibration = []
        for index, ((px, py), (lon, lat)) in enumerate(zip(pixel_corners, wgs84_corners)):
            values = (index + 1, px, py) + degrees_minutes(lat, "N", "S") + degrees_minutes(lon, "E", "W")
            calibration.append("Point%02i,xy,%i,%i,in,deg,%i,%f,%c,%i,%f,%c,grid,,,," % values)

        lines = [
            "OziExplorer Map Data File Version 2.2",
            name,
            image,
            "1 ,Map Code,",
            "WGS 84,WGS84,0.0000,0.0000,WGS84",
            "Reserved 1",
            "Reserved 2",
            "Magnetic Variation,,,E",
            "Map Projection,Transverse Mercator,PolyCal,No,AutoCalOnly,Yes,BSBUseWPX,No",
            *calibration,
            f"Projection Setup,0.000000000,{central_meridian},{scale_factor},500000.00,10000000.00,,,,,",
            "Map Feature = MF ; Map Comment = MC     These follow if they exist",
            "Track File = TF      These follow if they exist",
            "Moving Map Parameters = MM?    These follow if they exist",
            "MM0,Yes",
            "MMPNUM,4",
            *(f"MMPXY,{i + 1},{px},{py}" for i, (px, py) in enumerate(pixel_corners)),
            *(f"MMPLL,{i + 1},{lon},{lat}" for i, (lon, lat) in enumerate(wgs84_corners)),
            f"MM1B,{self.resolution_at(ppi)}",
            "MOP,Map Open Position,0,0",
            f"IWH,Map Image Width/Height,{width},{height}",
        ]
        return "\r\n".join(lines) + "\r\n"

    def write_oziexplorer_map(self, path: Path, name: str, image: str, ppi: float) -> Path:
        path = Path(path)
        with open(path, "w", newline="") as f:
            f.write(self.oziexplorer_map(name, image, ppi))
        return path

    # === Drawing space ===

    def local_transform(self, millimetres_per_unit: float = 1.0) -> Affine:
        """Affine from envelope drawing units to the unrotated canvas in mm.

        Drawing units have their origin at the top-left of the bounds with y
        pointing down, as in a raster or SVG exported for the bounds. The
        rotation turns the frame upright and the translation places the
        rotated frame's corners on the canvas edges.
        """
        scale = Affine.scale(millimetres_per_unit)
        if self.rotation == 0:
            return scale

        envelope_w = 1000.0 * self.bounds.width / self.scale
        envelope_h = 1000.0 * self.bounds.height / self.scale
        canvas_w, canvas_h = self.millimetres
        rotation = Affine.rotation(self.rotation)
        cx, cy = rotation * (0.5 * envelope_w, 0.5 * envelope_h)
        return Affine.translation(0.5 * canvas_w - cx, 0.5 * canvas_h - cy) * rotation * scale

    def svg_transform(self, millimetres_per_unit: float = 1.0) -> str:
        """local_transform as an SVG transform attribute."""
        if self.rotation == 0:
            return f"scale({millimetres_per_unit})"
        transform = self.local_transform(millimetres_per_unit)
        return (f"translate({transform.c} {transform.f}) "
                f"rotate({self.rotation}) scale({millimetres_per_unit})")

    def canvas_point(self, x: float, y: float) -> Point:
        """Convert projected coordinates to canvas millimetres."""
        local = (
            1000.0 * (x - self.bounds.min_x) / self.scale,
            1000.0 * (self.bounds.max_y - y) / self.scale,
        )
        return self.local_transform(1.0) * local
