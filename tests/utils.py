from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.enums import ColorInterp
from rasterio.transform import from_bounds

# Grid-free pipeline from UTM 33N to web mercator on the WGS84 ellipsoid.
UTM33_TO_WEBMERC = (
    "+proj=pipeline +step +inv +proj=utm +zone=33 +ellps=WGS84 "
    "+step +proj=webmerc +ellps=WGS84"
)
UTM33_BOUNDS = (500000.0, 5500000.0, 500640.0, 5500640.0)


def write_raster(
    path: Path,
    data: np.ndarray,
    *,
    bounds: Tuple[float, float, float, float],
    crs: str | None = "EPSG:32633",
    nodata: float | None = None,
    alpha: bool = False,
) -> Path:
    """Write a (h, w) or (bands, h, w) array as a GeoTIFF."""
    if data.ndim == 2:
        data = data[np.newaxis]
    count, height, width = data.shape
    transform = from_bounds(*bounds, width=width, height=height)
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=height,
        width=width,
        count=count,
        dtype=data.dtype,
        crs=crs,
        transform=transform,
        nodata=nodata,
    ) as dataset:
        dataset.write(data)
        if alpha:
            dataset.colorinterp = [ColorInterp.gray] * (count - 1) + [ColorInterp.alpha]
    return path


def write_geojson(
    path: Path,
    polygons: Sequence[Sequence[Tuple[float, float]]],
    *,
    crs: str | None = None,
) -> Path:
    """Write exterior rings as a GeoJSON FeatureCollection."""
    payload: dict[str, Any] = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {},
                "geometry": {"type": "Polygon", "coordinates": [list(map(list, ring))]},
            }
            for ring in polygons
        ],
    }
    if crs:
        payload["crs"] = {"type": "name", "properties": {"name": crs}}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def rgb_ramp(height: int, width: int) -> np.ndarray:
    """Three-band uint8 ramp, distinct per band."""
    cols = np.linspace(10, 240, width)
    rows = np.linspace(20, 200, height)
    red = np.tile(cols, (height, 1))
    green = np.tile(rows[:, np.newaxis], (1, width))
    blue = (red + green) / 2
    return np.rint(np.stack([red, green, blue])).astype("uint8")
