"""
Error types for map frame construction, tile planning, retrieval and assembly.

Layer-level errors (TileFetchFailed, AssemblyInconsistent) are collected per
layer by the pipeline; the others are raised to the caller.
"""

from typing import Optional


class MapError(Exception):
    """Base exception for map generation failures.

    Args:
        message: Human readable error message
        details: Optional context rendered after the message
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigError(MapError):
    """Invalid map or layer configuration."""
    pass


class GeometryDegenerate(MapError):
    """Point set cannot form a bounding rectangle with positive area."""
    pass


class PlanningInfeasible(MapError):
    """No zoom level satisfies the tile-count budget."""
    pass


class TileFetchFailed(MapError):
    """A tile could not be retrieved after exhausting the retry policy."""

    def __init__(self, message: str, layer: str = "", tile=None, details: Optional[dict] = None):
        details = dict(details or {})
        if layer:
            details.setdefault("layer", layer)
        if tile is not None:
            details.setdefault("tile", tile)
        super().__init__(message, details)
        self.layer = layer
        self.tile = tile


class FetchCancelled(MapError):
    """Retrieval stopped because cancellation was requested."""
    pass


class AssemblyInconsistent(MapError):
    """A fetched tile does not match its planned descriptor."""
    pass
