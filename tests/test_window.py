from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from orthowarp.raster.errors import ConfigurationError
from orthowarp.raster.tilegrid import xyz_tile_bounds
from orthowarp.raster.window import read_tile_rgba
from tests.utils import rgb_ramp, write_raster


def _rgba_tile(tmp_path: Path, z: int, x: int, y: int) -> tuple[Path, np.ndarray]:
    colour = rgb_ramp(256, 256)
    alpha = np.full((256, 256), 255, dtype="uint8")
    alpha[:, :64] = 0
    data = np.concatenate([colour, alpha[np.newaxis]])
    path = write_raster(
        tmp_path / "tile.tif",
        data,
        bounds=xyz_tile_bounds(x, y, z),
        crs="EPSG:3857",
        alpha=True,
    )
    return path, data


def test_read_tile_matches_native_pixels(tmp_path: Path) -> None:
    path, data = _rgba_tile(tmp_path, 12, 2200, 1400)
    tile = read_tile_rgba(path, 12, 2200, 1400)
    assert tile.shape == (256, 256, 4)
    assert tile.dtype == np.uint8
    np.testing.assert_array_equal(tile[:, :, 3], data[3])
    np.testing.assert_array_equal(tile[:, :, 0], data[0])


def test_read_tile_outside_extent_is_transparent(tmp_path: Path) -> None:
    path, _ = _rgba_tile(tmp_path, 12, 2200, 1400)
    tile = read_tile_rgba(path, 12, 2201, 1400)
    assert not tile[:, :, 3].any()


def test_read_tile_over_background(tmp_path: Path) -> None:
    path, data = _rgba_tile(tmp_path, 12, 2200, 1400)
    tile = read_tile_rgba(path, 12, 2200, 1400, background=(1, 2, 3))
    assert tile.shape == (256, 256, 3)
    assert tile[0, 0].tolist() == [1, 2, 3]
    np.testing.assert_array_equal(tile[:, 64:, 1], data[1][:, 64:])


def test_read_tile_uses_nodata_mask(tmp_path: Path) -> None:
    gray = np.full((256, 256), 90, dtype="uint8")
    gray[:128] = 0
    path = write_raster(
        tmp_path / "gray.tif",
        gray,
        bounds=xyz_tile_bounds(10, 20, 6),
        crs="EPSG:3857",
        nodata=0,
    )
    tile = read_tile_rgba(path, 6, 10, 20)
    assert not tile[:128, :, 3].any()
    assert np.all(tile[128:, :, 3] == 255)
    assert np.all(tile[128:, :, :3] == 90)


def test_read_tile_requires_web_mercator(tmp_path: Path) -> None:
    path = write_raster(
        tmp_path / "utm.tif",
        np.zeros((4, 4), dtype="uint8"),
        bounds=(500000.0, 5500000.0, 500040.0, 5500040.0),
    )
    with pytest.raises(ConfigurationError, match="EPSG:3857"):
        read_tile_rgba(path, 10, 0, 0)


def test_read_tile_requires_eight_bit(tmp_path: Path) -> None:
    path = write_raster(
        tmp_path / "float.tif",
        np.zeros((4, 4), dtype="float32"),
        bounds=xyz_tile_bounds(0, 0, 2),
        crs="EPSG:3857",
    )
    with pytest.raises(ConfigurationError, match="8-bit"):
        read_tile_rgba(path, 2, 0, 0)
