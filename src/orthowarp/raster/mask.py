"""Burn a coverage polygon into a single-band alpha raster.

Convention: pixels inside the coverage get ``burn_value`` (255, opaque) and
pixels outside keep ``init_value`` (0, transparent). ``invert`` swaps which
side is burned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

import numpy as np
import rasterio
from rasterio.features import rasterize
from rasterio.transform import from_origin
from rasterio.windows import bounds as window_bounds
from rasterio.windows import transform as window_transform
from shapely.geometry import box, mapping
from shapely.prepared import prep

from orthowarp.raster.coverage import Coverage, reproject_coverage
from orthowarp.raster.crs import normalize_crs
from orthowarp.raster.errors import ConfigurationError
from orthowarp.raster.models import MaskResult
from orthowarp.raster.tilegrid import grid_shape, iter_blocks, snap_bounds

LOGGER = logging.getLogger(__name__)

Bounds = Tuple[float, float, float, float]

OPAQUE = 255
TRANSPARENT = 0


@dataclass(frozen=True)
class MaskOptions:
    """Burn options for the alpha mask."""

    init_value: int = TRANSPARENT
    burn_value: int = OPAQUE
    invert: bool = False
    align: bool = True
    all_touched: bool = False
    block_size: int = 1024

    def __post_init__(self) -> None:
        for name in ("init_value", "burn_value"):
            value = getattr(self, name)
            if not 0 <= value <= 255:
                raise ConfigurationError(f"Mask {name} must fit in 8 bits, got {value}")

    @property
    def inside_value(self) -> int:
        return self.init_value if self.invert else self.burn_value

    @property
    def outside_value(self) -> int:
        return self.burn_value if self.invert else self.init_value


@dataclass(frozen=True)
class MaskGrid:
    """Pixel grid the mask is burned on."""

    crs: str
    bounds: Bounds
    resolution: tuple[float, float]
    origin: tuple[float, float] = (0.0, 0.0)


def mask_grid_for_raster(path: Path) -> MaskGrid:
    """Return the pixel grid of an existing raster, anchored at its origin."""
    with rasterio.open(path) as dataset:
        if dataset.crs is None:
            raise ConfigurationError(f"Raster CRS is required for masks: {path}")
        bounds = dataset.bounds
        return MaskGrid(
            crs=dataset.crs.to_string(),
            bounds=(bounds.left, bounds.bottom, bounds.right, bounds.top),
            resolution=(abs(dataset.res[0]), abs(dataset.res[1])),
            origin=(bounds.left, bounds.top),
        )


def _resolve_grid(grid: MaskGrid, align: bool) -> tuple[Bounds, int, int]:
    res_x, res_y = grid.resolution
    bounds = grid.bounds
    if align:
        bounds = snap_bounds(bounds, res_x, resolution_y=res_y, origin=grid.origin)
        width, height = grid_shape(bounds, res_x, resolution_y=res_y)
        return bounds, width, height
    minx, miny, maxx, maxy = bounds
    width = max(1, int(round((maxx - minx) / res_x)))
    height = max(1, int(round((maxy - miny) / res_y)))
    return bounds, width, height


def rasterize_mask(
    coverage: Coverage,
    grid: MaskGrid,
    output_path: Path,
    *,
    options: MaskOptions | None = None,
) -> MaskResult:
    """Burn the coverage into an 8-bit single band raster aligned to ``grid``.

    Coverage geometries are already healed; they are reprojected into the
    grid CRS and burned block by block so large grids never sit in memory
    at once.
    """
    options = options or MaskOptions()
    normalize_crs(grid.crs)
    projected = reproject_coverage(coverage, grid.crs)
    union = projected.union()
    prepared = prep(union)
    shapes = [(mapping(union), options.inside_value)]

    bounds, width, height = _resolve_grid(grid, options.align)
    res_x, res_y = grid.resolution
    transform = from_origin(bounds[0], bounds[3], res_x, res_y)
    block = options.block_size

    output_path.parent.mkdir(parents=True, exist_ok=True)
    profile = {
        "driver": "GTiff",
        "width": width,
        "height": height,
        "count": 1,
        "dtype": "uint8",
        "crs": normalize_crs(grid.crs).to_wkt(),
        "transform": transform,
        "compress": "deflate",
    }
    if width >= 16 and height >= 16:
        profile.update({"tiled": True, "blockxsize": 256, "blockysize": 256})

    with rasterio.open(output_path, "w", **profile) as dest:
        for _, window in iter_blocks(width, height, block):
            win_shape = (int(window.height), int(window.width))
            left, bottom, right, top = window_bounds(window, transform)
            if prepared.intersects(box(left, bottom, right, top)):
                data = rasterize(
                    shapes,
                    out_shape=win_shape,
                    transform=window_transform(window, transform),
                    fill=options.outside_value,
                    all_touched=options.all_touched,
                    dtype="uint8",
                )
            else:
                data = np.full(win_shape, options.outside_value, dtype="uint8")
            dest.write(data, 1, window=window)

    LOGGER.info("Alpha mask %sx%s written to %s.", width, height, output_path)
    return MaskResult(
        path=output_path,
        crs=grid.crs,
        bounds=bounds,
        resolution=(res_x, res_y),
        width=width,
        height=height,
        inside_value=options.inside_value,
        outside_value=options.outside_value,
        healed=projected.healed,
    )
