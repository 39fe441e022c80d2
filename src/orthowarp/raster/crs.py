"""CRS normalization and transformation helpers."""

from __future__ import annotations

import math
from typing import Callable, Sequence, Tuple

from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError

from orthowarp.raster.errors import ConfigurationError

Bounds = Tuple[float, float, float, float]
TransformFunc = Callable[[Sequence[float], Sequence[float]], Tuple[Sequence[float], Sequence[float]]]


def normalize_crs(value: str | CRS) -> CRS:
    """Normalize CRS input into a pyproj CRS object."""
    try:
        return CRS.from_user_input(value)
    except CRSError as exc:
        raise ConfigurationError(f"Invalid spatial reference {value!r}: {exc}") from exc


def crs_equal(left: str | CRS, right: str | CRS) -> bool:
    """Return True when two CRS inputs describe the same reference."""
    return normalize_crs(left) == normalize_crs(right)


def transformer(src: str | CRS, dst: str | CRS) -> Transformer:
    """Return a transformer that respects lon/lat axis order."""
    return Transformer.from_crs(normalize_crs(src), normalize_crs(dst), always_xy=True)


def _linspace(start: float, stop: float, count: int) -> list[float]:
    """Return evenly spaced values between start and stop inclusive."""
    if count <= 1:
        return [start]
    step = (stop - start) / (count - 1)
    return [start + step * index for index in range(count)]


def densify_boundary(bounds: Bounds, densify_pts: int = 0) -> tuple[list[float], list[float]]:
    """Return boundary sample coordinates: corners plus points along each edge."""
    minx, miny, maxx, maxy = bounds
    if densify_pts <= 0:
        return [minx, minx, maxx, maxx], [miny, maxy, miny, maxy]
    steps = densify_pts + 2
    xs: list[float] = []
    ys: list[float] = []
    for x in _linspace(minx, maxx, steps):
        xs.extend([x, x])
        ys.extend([miny, maxy])
    for y in _linspace(miny, maxy, steps):
        xs.extend([minx, maxx])
        ys.extend([y, y])
    return xs, ys


def bounds_through(func: TransformFunc, bounds: Bounds, *, densify_pts: int = 0) -> Bounds:
    """Transform bounds with an arbitrary coordinate function.

    Samples that come back non-finite are ignored; if none survive a
    ConfigurationError is raised.
    """
    xs, ys = densify_boundary(bounds, densify_pts)
    out_xs, out_ys = func(xs, ys)
    finite = [
        (float(x), float(y))
        for x, y in zip(out_xs, out_ys)
        if math.isfinite(x) and math.isfinite(y)
    ]
    if not finite:
        raise ConfigurationError("Source extent could not be transformed to the target CRS.")
    fx = [x for x, _ in finite]
    fy = [y for _, y in finite]
    return (min(fx), min(fy), max(fx), max(fy))


def transform_bounds(
    bounds: Bounds,
    src: str | CRS,
    dst: str | CRS,
    *,
    densify_pts: int = 0,
) -> Bounds:
    """Transform bounding coordinates between CRSs."""
    tx = transformer(src, dst)
    return bounds_through(tx.transform, bounds, densify_pts=densify_pts)
