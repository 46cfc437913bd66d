"""
map_config.py - Map configuration loaded from map_config.json

Defaults are deep-merged with the user's JSON file into an immutable
MapConfig value. The frame and layer specs are built from it explicitly;
there is no module-level configuration state.

Example map_config.json:

    {
      "name": "blue-mountains",
      "scale": 25000,
      "size": "297x210",
      "longitude": 150.3,
      "latitude": -33.7,
      "rotation": 10,
      "layers": {
        "aerial": {"type": "tiles", "url": "https://tiles.example.com/{z}/{x}/{y}.png"},
        "topo": {"type": "arcgis", "host": "maps.example.com", "service": "Topo"}
      }
    }
"""

import copy
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from errors import ConfigError
from layers import Capability, LayerSpec
from map_frame import MapFrame
from map_utils import Reprojector, reproject as default_reproject
from tile_fetch import ArcGISExportSource, RetryPolicy, SlippyTileSource
from tile_grid import TileGridConstraints, ZoomLadder

CONFIG_FILE = "map_config.json"
WEB_MERCATOR = "EPSG:3857"

DEFAULT_CONFIG: Dict[str, Any] = {
    "name": "map",
    "scale": 25000,
    "ppi": 300,
    "rotation": 0,
    "margin": 15,
    "apply_margin": True,
    "utm": False,
    "projection": None,
    "workers": 4,
    "output": ".",
    "retry": {
        "max_attempts": 5,
        "base_delay": 1.0,
        "max_delay": 8.0,
        "timeout": 30.0,
    },
    "layers": {},
}

# Per-type layer defaults
LAYER_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "arcgis": {"tile_size": [2048, 2048], "crops": [[0, 0], [0, 0]], "interval": 0.0},
    "tiles": {"tile_size": [256, 256], "crops": [[0, 0], [0, 0]], "tile_limit": 400,
              "interval": 0.1, "min_zoom": 0, "max_zoom": 19},
    "image": {},
    "vector": {},
}

LAYER_CAPABILITIES = {
    "arcgis": Capability.RASTER_FETCH,
    "tiles": Capability.RASTER_FETCH,
    "image": Capability.EMBED,
    "vector": Capability.VECTOR_FETCH,
}

REQUIRED_LAYER_KEYS = {
    "arcgis": ("host", "service"),
    "tiles": ("url",),
    "image": ("path",),
    "vector": (),
}

SIZE_PATTERN = re.compile(r"^\s*([\d.]+)\s*(?:mm)?\s*[x,]\s*([\d.]+)\s*(?:mm)?\s*$")


def deep_merge(base: Mapping, overrides: Mapping) -> dict:
    """Merge overrides into base, recursing into nested dicts.

    Neither input is modified; the result shares no mutable state with them.
    """
    merged = copy.deepcopy(dict(base))
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Union[str, Path] = CONFIG_FILE, defaults: Mapping = DEFAULT_CONFIG,
                verbose: bool = True) -> dict:
    """Read a JSON config file and merge it over the defaults."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError("configuration file not found", {"path": config_path})

    if verbose:
        print(f"Loading configuration from {config_path}...")
    try:
        with open(config_path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError("configuration file is not valid JSON", {"path": config_path, "error": e}) from e

    if not isinstance(data, dict):
        raise ConfigError("configuration must be a JSON object", {"path": config_path})
    return deep_merge(defaults, data)


def parse_size(value) -> Tuple[float, float]:
    """Paper size in millimetres from "297x210", "297,210" or [297, 210]."""
    try:
        if isinstance(value, str):
            match = SIZE_PATTERN.match(value)
            sizes = [float(group) for group in match.groups()] if match else []
        elif isinstance(value, (list, tuple)):
            sizes = [float(size) for size in value]
        else:
            sizes = []
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid map size: {value}") from e

    if len(sizes) != 2 or not all(size > 0 for size in sizes):
        raise ConfigError(f"invalid map size: {value}")
    return tuple(sizes)


def _pair(value, name: str) -> Tuple[int, int]:
    try:
        first, second = value
        return (int(first), int(second))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a pair of integers, got {value!r}") from e


@dataclass(frozen=True)
class MapConfig:
    """Validated configuration for one map run.

    Attributes:
        name: Map name, used for output file names
        scale: Print scale denominator
        ppi: Print resolution in pixels per inch
        rotation: Degrees, or "auto" to fit the points
        margin: Paper margin in mm for frames fitted around coordinates
        apply_margin: Whether fitted frames get the margin
        utm: Work in the UTM zone instead of a centred transverse Mercator
        projection: Explicit working CRS, overriding the default
        workers: Concurrent tile requests per layer
        output: Output directory
        retry: Retry policy for tile fetches
        location: Location keys selecting the frame construction mode
        layers: (name, settings) per layer in drawing order
    """
    name: str
    scale: float
    ppi: float
    rotation: Union[float, str]
    margin: float
    apply_margin: bool
    utm: bool
    projection: Optional[str]
    workers: int
    output: Path
    retry: RetryPolicy
    location: Tuple[Tuple[str, Any], ...]
    layers: Tuple[Tuple[str, Tuple[Tuple[str, Any], ...]], ...]

    LOCATION_KEYS = ("zone", "south", "eastings", "northings", "easting", "northing",
                     "longitudes", "latitudes", "longitude", "latitude", "size", "points")

    @classmethod
    def from_dict(cls, data: Mapping) -> 'MapConfig':
        """Validate a merged configuration dict."""
        data = deep_merge(DEFAULT_CONFIG, data)

        scale = data["scale"]
        if not isinstance(scale, (int, float)) or scale <= 0:
            raise ConfigError(f"scale must be a positive number, got {scale!r}")
        ppi = data["ppi"]
        if not isinstance(ppi, (int, float)) or ppi <= 0:
            raise ConfigError(f"ppi must be a positive number, got {ppi!r}")
        rotation = data["rotation"]
        if rotation != "auto" and not isinstance(rotation, (int, float)):
            raise ConfigError(f"rotation must be a number or \"auto\", got {rotation!r}")

        try:
            retry = RetryPolicy(**data["retry"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid retry settings: {e}") from e

        if not isinstance(data["layers"], Mapping):
            raise ConfigError("layers must be an object mapping layer names to settings")
        layers = []
        for layer_name, settings in data["layers"].items():
            if not isinstance(settings, Mapping):
                raise ConfigError("layer settings must be an object", {"layer": layer_name})
            layer_type = settings.get("type")
            if layer_type not in LAYER_CAPABILITIES:
                raise ConfigError(f"unknown layer type: {layer_type!r}", {"layer": layer_name})
            missing = [key for key in REQUIRED_LAYER_KEYS[layer_type] if key not in settings]
            if missing:
                raise ConfigError(f"layer is missing {', '.join(missing)}", {"layer": layer_name})
            merged = deep_merge(LAYER_DEFAULTS[layer_type], settings)
            layers.append((layer_name, tuple(merged.items())))

        return cls(
            name=str(data["name"]),
            scale=float(scale),
            ppi=float(ppi),
            rotation=rotation if rotation == "auto" else float(rotation),
            margin=float(data["margin"]),
            apply_margin=bool(data["apply_margin"]),
            utm=bool(data["utm"]),
            projection=data["projection"],
            workers=int(data["workers"]),
            output=Path(data["output"]),
            retry=retry,
            location=tuple((key, data[key]) for key in cls.LOCATION_KEYS if key in data),
            layers=tuple(layers),
        )

    def build_frame(self, reproject: Reprojector = default_reproject) -> MapFrame:
        """Construct the map frame from whichever location keys are present."""
        loc = dict(self.location)
        common = dict(projection=self.projection, utm=self.utm, reproject=reproject)
        margin = self.margin if self.apply_margin else 0.0
        south = bool(loc.get("south", False))

        if all(key in loc for key in ("zone", "eastings", "northings")):
            return MapFrame.from_utm_extremes(
                self.name, self.scale, int(loc["zone"]), loc["eastings"], loc["northings"],
                south=south, rotation=self.rotation, margin_mm=margin, **common)
        if all(key in loc for key in ("longitudes", "latitudes")):
            return MapFrame.from_extremes(
                self.name, self.scale, loc["longitudes"], loc["latitudes"],
                rotation=self.rotation, margin_mm=margin, **common)
        if all(key in loc for key in ("size", "zone", "easting", "northing")):
            return MapFrame.from_utm_centre(
                self.name, self.scale, parse_size(loc["size"]), int(loc["zone"]),
                loc["easting"], loc["northing"], south=south, rotation=self.rotation, **common)
        if all(key in loc for key in ("size", "longitude", "latitude")):
            return MapFrame.from_size(
                self.name, self.scale, parse_size(loc["size"]), (loc["longitude"], loc["latitude"]),
                rotation=self.rotation, **common)
        if "points" in loc:
            return MapFrame.from_points(
                self.name, self.scale, [tuple(point) for point in loc["points"]],
                rotation=self.rotation, margin_mm=margin, **common)

        raise ConfigError(
            "map extent must be provided as zone/eastings/northings, longitudes/latitudes, "
            "zone/easting/northing/size, longitude/latitude/size or points"
        )

    def layer_specs(self, frame: MapFrame) -> List[LayerSpec]:
        """Layer specs for the frame, in drawing order."""
        return [self._layer_spec(name, dict(settings), frame) for name, settings in self.layers]

    def _layer_spec(self, name: str, settings: dict, frame: MapFrame) -> LayerSpec:
        layer_type = settings["type"]
        capability = LAYER_CAPABILITIES[layer_type]
        resolution = float(settings.get("resolution") or frame.resolution_at(self.ppi))
        common = dict(
            name=name,
            capability=capability,
            resolution=resolution,
            opacity=float(settings.get("opacity", 1.0)),
            workers=int(settings.get("workers", self.workers)),
            interval=float(settings.get("interval", 0.0)),
        )

        if layer_type == "arcgis":
            projection = settings.get("projection") or frame.projection
            constraints = TileGridConstraints(
                max_tile_size=_pair(settings["tile_size"], "tile_size"),
                crop_margins=tuple(_pair(crop, "crops") for crop in settings["crops"]),
            )
            source = ArcGISExportSource(
                host=settings["host"],
                service=settings["service"],
                crs=projection,
                folder=settings.get("folder"),
                instance=settings.get("instance", "arcgis"),
                image=bool(settings.get("image", False)),
                layers=settings.get("layers"),
                image_format=settings.get("format"),
                dpi=self.scale * 0.0254 / resolution,
                headers=settings.get("headers"),
            )
            return LayerSpec(constraints=constraints, source=source, projection=projection, **common)

        if layer_type == "tiles":
            constraints = TileGridConstraints(
                max_tile_size=_pair(settings["tile_size"], "tile_size"),
                crop_margins=tuple(_pair(crop, "crops") for crop in settings["crops"]),
                tile_count_budget=int(settings["tile_limit"]),
                zoom_ladder=ZoomLadder.web_mercator(int(settings["min_zoom"]), int(settings["max_zoom"])),
            )
            source = SlippyTileSource(settings["url"], headers=settings.get("headers"))
            return LayerSpec(constraints=constraints, source=source, projection=WEB_MERCATOR, **common)

        if layer_type == "image":
            return LayerSpec(path=Path(settings["path"]), projection=settings.get("projection"), **common)

        params = {key: value for key, value in settings.items() if key != "type"}
        return LayerSpec(projection=settings.get("projection") or frame.projection, params=params, **common)
