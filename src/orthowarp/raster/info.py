"""Raster inspection helpers."""

from __future__ import annotations

from pathlib import Path

import rasterio

from orthowarp.raster.models import RasterInfo


def inspect_raster(path: Path) -> RasterInfo:
    """Collect metadata about a raster on disk."""
    with rasterio.open(path) as dataset:
        crs = dataset.crs.to_string() if dataset.crs else None
        bounds = dataset.bounds
        return RasterInfo(
            path=Path(path),
            crs=crs,
            bounds=(bounds.left, bounds.bottom, bounds.right, bounds.top),
            width=dataset.width,
            height=dataset.height,
            count=dataset.count,
            nodata=dataset.nodata,
            resolution=(abs(dataset.res[0]), abs(dataset.res[1])),
            dtype=dataset.dtypes[0],
        )
