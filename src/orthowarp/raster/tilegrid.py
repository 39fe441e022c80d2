"""Web mercator tile grid, target-aligned snapping and block layout."""

from __future__ import annotations

import math
from typing import Iterator, Tuple

from rasterio.windows import Window

from orthowarp.raster.errors import ConfigurationError

Bounds = Tuple[float, float, float, float]

EARTH_RADIUS = 6_378_137.0
HALF_CIRCUMFERENCE = math.pi * EARTH_RADIUS
MAX_ZOOM = 30
DEFAULT_TILE_SIZE = 256

# Tolerance in pixels when snapping, so 2.9999999999 still counts as 3.
_SNAP_EPSILON = 1e-9


def resolution_for_zoom(zoom: int, tile_size: int = DEFAULT_TILE_SIZE) -> float:
    """Return ground resolution in metres per pixel for a zoom level."""
    if isinstance(zoom, bool) or not isinstance(zoom, int):
        raise ConfigurationError(f"Zoom level must be an integer, got {zoom!r}")
    if zoom < 0 or zoom > MAX_ZOOM:
        raise ConfigurationError(f"Zoom level must be between 0 and {MAX_ZOOM}, got {zoom}")
    if tile_size <= 0:
        raise ConfigurationError("Tile size must be positive.")
    return 2.0 * HALF_CIRCUMFERENCE / (tile_size * 2**zoom)


def zoom_for_resolution(resolution: float, tile_size: int = DEFAULT_TILE_SIZE) -> int:
    """Return the lowest zoom whose resolution is at least as fine as ``resolution``."""
    if resolution <= 0:
        raise ConfigurationError("Resolution must be positive.")
    for zoom in range(MAX_ZOOM + 1):
        if resolution_for_zoom(zoom, tile_size) <= resolution * (1 + _SNAP_EPSILON):
            return zoom
    return MAX_ZOOM


def _snap_axis(low: float, high: float, res: float, origin: float) -> tuple[float, float]:
    start = math.floor((low - origin) / res + _SNAP_EPSILON)
    stop = math.ceil((high - origin) / res - _SNAP_EPSILON)
    stop = max(stop, start + 1)
    return origin + start * res, origin + stop * res


def snap_bounds(
    bounds: Bounds,
    resolution: float,
    *,
    resolution_y: float | None = None,
    origin: tuple[float, float] = (0.0, 0.0),
) -> Bounds:
    """Snap bounds outward to integer multiples of the resolution.

    Multiples are counted from ``origin``; the default origin gives
    target-aligned pixels shared by every independently processed extent.
    """
    res_y = resolution if resolution_y is None else resolution_y
    if resolution <= 0 or res_y <= 0:
        raise ConfigurationError("Resolution must be positive.")
    minx, miny, maxx, maxy = bounds
    if minx > maxx or miny > maxy:
        raise ConfigurationError(f"Invalid bounds: {bounds}")
    left, right = _snap_axis(minx, maxx, resolution, origin[0])
    bottom, top = _snap_axis(miny, maxy, res_y, origin[1])
    return (left, bottom, right, top)


def grid_shape(
    bounds: Bounds,
    resolution: float,
    *,
    resolution_y: float | None = None,
) -> tuple[int, int]:
    """Return (width, height) in pixels for bounds already aligned to the resolution."""
    res_y = resolution if resolution_y is None else resolution_y
    minx, miny, maxx, maxy = bounds
    width = int(round((maxx - minx) / resolution))
    height = int(round((maxy - miny) / res_y))
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"Bounds {bounds} are empty at resolution {resolution}")
    return width, height


def aligned_grid(
    bounds: Bounds,
    resolution: float,
    *,
    target_aligned: bool = True,
) -> tuple[Bounds, int, int]:
    """Return the output bounds and exact pixel dimensions for a target extent."""
    if target_aligned:
        snapped = snap_bounds(bounds, resolution)
        width, height = grid_shape(snapped, resolution)
        return snapped, width, height
    minx, miny, maxx, maxy = bounds
    width = max(1, int(math.ceil((maxx - minx) / resolution - _SNAP_EPSILON)))
    height = max(1, int(math.ceil((maxy - miny) / resolution - _SNAP_EPSILON)))
    return (minx, maxy - height * resolution, minx + width * resolution, maxy), width, height


def xyz_tile_bounds(x: int, y: int, z: int, tile_size: int = DEFAULT_TILE_SIZE) -> Bounds:
    """Return EPSG:3857 bounds of an XYZ tile."""
    pixel_size = resolution_for_zoom(z, tile_size)
    min_x = x * tile_size * pixel_size - HALF_CIRCUMFERENCE
    max_y = HALF_CIRCUMFERENCE - y * tile_size * pixel_size
    max_x = min_x + tile_size * pixel_size
    min_y = max_y - tile_size * pixel_size
    return (min_x, min_y, max_x, max_y)


def xyz_tiles_for_bounds(bounds: Bounds, zoom: int) -> list[tuple[int, int, int]]:
    """Return (z, x, y) for every XYZ tile intersecting EPSG:3857 bounds."""
    span = 2.0 * HALF_CIRCUMFERENCE / 2**zoom
    last = 2**zoom - 1
    minx, miny, maxx, maxy = bounds
    start_x = max(0, math.floor((minx + HALF_CIRCUMFERENCE) / span))
    end_x = min(last, math.ceil((maxx + HALF_CIRCUMFERENCE) / span) - 1)
    start_y = max(0, math.floor((HALF_CIRCUMFERENCE - maxy) / span))
    end_y = min(last, math.ceil((HALF_CIRCUMFERENCE - miny) / span) - 1)
    return [
        (zoom, x, y)
        for y in range(start_y, end_y + 1)
        for x in range(start_x, end_x + 1)
    ]


def validate_block_size(block_size: int) -> int:
    """Return a block size usable as a tiled GeoTIFF block edge."""
    if block_size <= 0 or block_size % 16:
        raise ConfigurationError("Block size must be a positive multiple of 16.")
    return block_size


def block_id(window: Window) -> str:
    """Stable identifier of a block window."""
    return f"r{int(window.row_off)}_c{int(window.col_off)}"


def iter_blocks(width: int, height: int, block_size: int) -> Iterator[tuple[str, Window]]:
    """Yield (block id, window) covering the grid in row-major order."""
    for row in range(0, height, block_size):
        for col in range(0, width, block_size):
            window = Window(
                col,
                row,
                min(block_size, width - col),
                min(block_size, height - row),
            )
            yield block_id(window), window
