"""Read XYZ tile windows from warped web mercator output."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import rasterio
from rasterio.enums import ColorInterp, Resampling
from rasterio.windows import Window, from_bounds

from orthowarp.raster.crs import crs_equal
from orthowarp.raster.errors import ConfigurationError
from orthowarp.raster.tilegrid import DEFAULT_TILE_SIZE, xyz_tile_bounds

_PIXEL_TOLERANCE = 1e-6


def _snap_window(window: Window) -> Window:
    """Round offsets and sizes that are integers up to float noise."""
    values = []
    for value in (window.col_off, window.row_off, window.width, window.height):
        nearest = round(value)
        values.append(nearest if abs(value - nearest) < _PIXEL_TOLERANCE else value)
    return Window(*values)


def read_tile_rgba(
    path: Path,
    z: int,
    x: int,
    y: int,
    *,
    tile_size: int = DEFAULT_TILE_SIZE,
    background: tuple[int, int, int] | None = None,
) -> np.ndarray:
    """Return a (tile_size, tile_size, 4) RGBA tile, or RGB over ``background``.

    Areas outside the raster or behind its mask are transparent. Reads use
    nearest resampling, so tiles at the warp's own zoom are pixel exact.
    """
    with rasterio.open(path) as dataset:
        if dataset.crs is None or not crs_equal(dataset.crs.to_wkt(), "EPSG:3857"):
            raise ConfigurationError("Tile reads require an EPSG:3857 raster.")
        if dataset.dtypes[0] != "uint8":
            raise ConfigurationError("Tile reads require 8-bit imagery.")
        window = _snap_window(
            from_bounds(*xyz_tile_bounds(x, y, z, tile_size), transform=dataset.transform)
        )
        interps = list(dataset.colorinterp)
        color = [index + 1 for index, interp in enumerate(interps) if interp != ColorInterp.alpha]
        color = (color * 3)[:3] if len(color) < 3 else color[:3]
        out_shape = (len(color), tile_size, tile_size)
        rgb = dataset.read(
            color,
            window=window,
            out_shape=out_shape,
            boundless=True,
            fill_value=0,
            resampling=Resampling.nearest,
        )
        if ColorInterp.alpha in interps:
            alpha_index = interps.index(ColorInterp.alpha) + 1
            alpha = dataset.read(
                alpha_index,
                window=window,
                out_shape=(tile_size, tile_size),
                boundless=True,
                fill_value=0,
                resampling=Resampling.nearest,
            )
        else:
            masks = dataset.read_masks(
                color,
                window=window,
                out_shape=out_shape,
                boundless=True,
                resampling=Resampling.nearest,
            )
            alpha = np.where(np.all(masks > 0, axis=0), 255, 0).astype("uint8")

    if background is None:
        return np.dstack([rgb[0], rgb[1], rgb[2], alpha]).astype("uint8")
    weight = alpha.astype("float64") / 255.0
    layers = []
    for band, fill in zip(rgb, background):
        layers.append(np.rint(band * weight + fill * (1.0 - weight)))
    return np.dstack(layers).astype("uint8")
