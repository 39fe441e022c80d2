"""Error types raised by raster processing."""

from __future__ import annotations


class OrthowarpError(Exception):
    """Base class for orthowarp failures."""


class ConfigurationError(OrthowarpError, ValueError):
    """Invalid inputs detected before any pixel work starts."""


class GeometryError(OrthowarpError, ValueError):
    """Polygon input that is empty or cannot be healed."""


class TileProcessingError(OrthowarpError, RuntimeError):
    """A single output block failed to resample or write."""

    def __init__(self, block: str, message: str) -> None:
        super().__init__(f"Block {block} failed: {message}")
        self.block = block
