"""
layers.py - Produce one frame-aligned raster per map layer

Each layer declares a capability and the pipeline dispatches on it:
  - RASTER_FETCH: plan tiles, fetch them, assemble, warp onto the frame
  - EMBED: read a local georeferenced raster and warp it onto the frame
  - VECTOR_FETCH: hand the frame to an injected vector renderer

A failing layer is recorded in the run report and the remaining layers are
still rendered.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from PIL import Image

from errors import AssemblyInconsistent, ConfigError, MapError
from map_frame import MapFrame
from mosaic import MosaicAssembler
from raster_warp import read_raster, warp_to_frame
from tile_fetch import RetryPolicy, TileRetriever
from tile_grid import TileGridConstraints, TileGridPlan, TileIndex, plan_tiles

DEFAULT_PPI = 300


class Capability(Enum):
    RASTER_FETCH = "raster"
    VECTOR_FETCH = "vector"
    EMBED = "embed"


@dataclass(frozen=True)
class LayerSpec:
    """Everything needed to render one layer.

    Attributes:
        name: Layer name
        capability: How the layer is produced
        constraints: Tiling limits of the service (RASTER_FETCH)
        source: Tile request builder (RASTER_FETCH)
        projection: CRS the layer is planned or stored in
        resolution: Ground resolution of the frame raster
        opacity: Group opacity in the composite
        workers: Concurrent tile requests
        interval: Minimum seconds between tile requests
        path: Local raster (EMBED)
        params: Settings passed through to a vector renderer
    """
    name: str
    capability: Capability
    constraints: Optional[TileGridConstraints] = None
    source: object = None
    projection: Optional[str] = None
    resolution: Optional[float] = None
    opacity: float = 1.0
    workers: int = 4
    interval: float = 0.0
    path: Optional[Path] = None
    params: dict = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class LayerResult:
    """A finished layer: an RGBA raster on the frame's pixel grid."""
    name: str
    image: Image.Image
    resolution: float
    opacity: float = 1.0


@dataclass(frozen=True)
class LayerFailure:
    name: str
    error: MapError


@dataclass
class RunReport:
    """Outcome of rendering all layers."""
    results: List[LayerResult] = field(default_factory=list)
    failures: List[LayerFailure] = field(default_factory=list)
    warnings: List[MapError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


FetchTiles = Callable[[LayerSpec, TileGridPlan, threading.Event], Dict[TileIndex, bytes]]
VectorRenderer = Callable[[MapFrame, LayerSpec, float], Image.Image]


def retriever_fetch(policy: RetryPolicy, verbose: bool = True, session=None,
                    sleep: Optional[Callable[[float], None]] = None) -> FetchTiles:
    """Tile fetcher backed by a TileRetriever per layer.

    session and sleep are handed to every retriever; by default each layer
    gets its own requests session and waits are cut short on failure.
    """
    def fetch_tiles(layer: LayerSpec, plan: TileGridPlan, cancel: threading.Event) -> Dict[TileIndex, bytes]:
        retriever = TileRetriever(
            source=layer.source,
            policy=policy,
            workers=layer.workers,
            interval=layer.interval,
            session=session,
            sleep=sleep,
            cancel=cancel,
            verbose=verbose,
        )
        return retriever.retrieve(plan, layer.name)
    return fetch_tiles


def _plan_resolution(frame: MapFrame, crs: str, resolution: float) -> float:
    """Frame resolution expressed in another CRS's units."""
    if crs == frame.projection:
        return resolution
    layer_bounds = frame.transform_bounds_to(crs)
    return resolution * layer_bounds.width / frame.bounds.width


def _render_raster(frame, layer, resolution, fetch_tiles, cancel, warnings, verbose) -> Image.Image:
    if layer.constraints is None or layer.source is None:
        raise ConfigError("raster layer needs tiling constraints and a source", {"layer": layer.name})

    crs = layer.projection or frame.projection
    bounds = frame.transform_bounds_to(crs)
    plan = plan_tiles(bounds, _plan_resolution(frame, crs, resolution), layer.constraints)

    warning = plan.warning()
    if warning:
        warnings.append(warning)
        if verbose:
            print(f"  Warning: {layer.name}: {warning}")

    if verbose:
        zoom = f", zoom {plan.zoom}" if plan.zoom is not None else ""
        print(f"  Downloading: {layer.name}, {plan.tile_count} tiles @ {plan.resolution:.2f} m/px{zoom}")

    images = fetch_tiles(layer, plan, cancel)
    assembler = MosaicAssembler(plan)
    canvas = assembler.composite(images)

    if not assembler.needs_warp(frame, crs, resolution):
        return canvas
    if verbose:
        print(f"    Warping {plan.dimensions[0]}x{plan.dimensions[1]} mosaic onto the map frame")
    return warp_to_frame(canvas, assembler.layout().affine, crs, frame, resolution)


def render_layer(
    frame: MapFrame,
    layer: LayerSpec,
    policy: Optional[RetryPolicy] = None,
    fetch_tiles: Optional[FetchTiles] = None,
    vector_renderer: Optional[VectorRenderer] = None,
    cancel: Optional[threading.Event] = None,
    warnings: Optional[List[MapError]] = None,
    verbose: bool = True,
) -> LayerResult:
    """Render a single layer onto the frame's pixel grid.

    Args:
        frame: Map frame
        layer: Layer to render
        policy: Retry policy for tile fetches
        fetch_tiles: Replaces network retrieval (tests, caches)
        vector_renderer: Renders VECTOR_FETCH layers
        cancel: Stops tile retrieval once set
        warnings: Collects non-fatal planning warnings
        verbose: Print progress

    Returns:
        LayerResult with an RGBA image of frame.dimensions_at_resolution()
    """
    policy = policy or RetryPolicy()
    fetch_tiles = fetch_tiles or retriever_fetch(policy, verbose)
    cancel = cancel or threading.Event()
    warnings = warnings if warnings is not None else []
    resolution = layer.resolution or frame.resolution_at(DEFAULT_PPI)

    if layer.capability is Capability.RASTER_FETCH:
        image = _render_raster(frame, layer, resolution, fetch_tiles, cancel, warnings, verbose)

    elif layer.capability is Capability.EMBED:
        if layer.path is None:
            raise ConfigError("embedded layer needs a raster path", {"layer": layer.name})
        if verbose:
            print(f"  Embedding: {layer.name} from {layer.path}")
        source, affine, crs = read_raster(layer.path, layer.projection)
        image = warp_to_frame(source, affine, crs, frame, resolution)

    elif layer.capability is Capability.VECTOR_FETCH:
        if vector_renderer is None:
            raise ConfigError("no vector renderer available", {"layer": layer.name})
        if verbose:
            print(f"  Rendering: {layer.name}")
        image = vector_renderer(frame, layer, resolution)
        expected = frame.dimensions_at_resolution(resolution)
        if tuple(image.size) != expected:
            raise AssemblyInconsistent(
                "vector renderer returned the wrong image size",
                {"layer": layer.name, "expected": expected, "actual": image.size},
            )

    else:
        raise ConfigError(f"unsupported layer capability: {layer.capability}", {"layer": layer.name})

    return LayerResult(name=layer.name, image=image, resolution=resolution, opacity=layer.opacity)


def run_layers(
    frame: MapFrame,
    layers: List[LayerSpec],
    policy: Optional[RetryPolicy] = None,
    fetch_tiles: Optional[FetchTiles] = None,
    vector_renderer: Optional[VectorRenderer] = None,
    cancel: Optional[threading.Event] = None,
    verbose: bool = True,
) -> RunReport:
    """Render every layer, collecting failures instead of stopping at the first.

    A KeyboardInterrupt sets the cancel event, so no new tiles are requested,
    and is re-raised.
    """
    cancel = cancel or threading.Event()
    report = RunReport()

    for number, layer in enumerate(layers, start=1):
        if verbose:
            print(f"\n[{number}/{len(layers)}] Layer: {layer.name}")
        try:
            result = render_layer(
                frame, layer,
                policy=policy,
                fetch_tiles=fetch_tiles,
                vector_renderer=vector_renderer,
                cancel=cancel,
                warnings=report.warnings,
                verbose=verbose,
            )
        except KeyboardInterrupt:
            cancel.set()
            raise
        except MapError as e:
            report.failures.append(LayerFailure(name=layer.name, error=e))
            if verbose:
                print(f"    Failed: {e}")
            continue
        report.results.append(result)

    return report
