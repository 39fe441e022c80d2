from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import rasterio

from orthowarp.raster.errors import ConfigurationError
from orthowarp.raster.mosaic import build_mosaic
from tests.utils import write_raster


def _pair(tmp_path: Path, first: int, second: int, *, nodata: float | None = None):
    a = write_raster(
        tmp_path / "a.tif",
        np.full((4, 4), first, dtype="uint8"),
        bounds=(0.0, 0.0, 4.0, 4.0),
        nodata=nodata,
    )
    b = write_raster(
        tmp_path / "b.tif",
        np.full((4, 4), second, dtype="uint8"),
        bounds=(2.0, 0.0, 6.0, 4.0),
        nodata=nodata,
    )
    return a, b


def test_build_mosaic_vrt_union_extent(tmp_path: Path) -> None:
    a, b = _pair(tmp_path, 1, 2)
    result = build_mosaic([a, b], tmp_path / "mosaic.vrt")

    assert result.bounds == (0.0, 0.0, 6.0, 4.0)
    assert result.resolution == (1.0, 1.0)
    assert result.sources == (a, b)
    with rasterio.open(result.path) as dataset:
        assert (dataset.width, dataset.height) == (6, 4)
        data = dataset.read(1)
    assert np.all(data[:, :2] == 1)
    assert np.all(data[:, 4:] == 2)


@pytest.mark.parametrize("method, expected", [("first", 1), ("last", 2)])
@pytest.mark.parametrize("driver, name", [("VRT", "mosaic.vrt"), ("GTiff", "mosaic.tif")])
def test_overlap_policy(tmp_path: Path, method: str, expected: int, driver: str, name: str) -> None:
    a, b = _pair(tmp_path, 1, 2)
    result = build_mosaic([a, b], tmp_path / name, method=method, driver=driver)
    with rasterio.open(result.path) as dataset:
        data = dataset.read(1)
    assert np.all(data[:, 2:4] == expected)


def test_nodata_never_covers_valid_pixels(tmp_path: Path) -> None:
    first = np.full((4, 4), 1, dtype="uint8")
    first[:, 2:] = 0
    a = write_raster(tmp_path / "a.tif", first, bounds=(0.0, 0.0, 4.0, 4.0), nodata=0)
    b = write_raster(
        tmp_path / "b.tif",
        np.full((4, 4), 2, dtype="uint8"),
        bounds=(2.0, 0.0, 6.0, 4.0),
        nodata=0,
    )
    result = build_mosaic([a, b], tmp_path / "mosaic.vrt", method="first")
    with rasterio.open(result.path) as dataset:
        assert dataset.nodata == 0
        data = dataset.read(1)
    assert np.all(data[:, :2] == 1)
    assert np.all(data[:, 2:] == 2)


def test_build_mosaic_keeps_band_count(tmp_path: Path) -> None:
    rgb = np.stack([np.full((4, 4), value, dtype="uint8") for value in (10, 20, 30)])
    a = write_raster(tmp_path / "a.tif", rgb, bounds=(0.0, 0.0, 4.0, 4.0))
    b = write_raster(tmp_path / "b.tif", rgb + 1, bounds=(4.0, 0.0, 8.0, 4.0))
    result = build_mosaic([a, b], tmp_path / "mosaic.vrt")
    assert result.count == 3
    with rasterio.open(result.path) as dataset:
        assert dataset.read(3)[0, 7] == 31


@pytest.mark.parametrize("dtype", ["uint16", "float32"])
def test_build_mosaic_vrt_keeps_data_type(tmp_path: Path, dtype: str) -> None:
    a = write_raster(tmp_path / "a.tif", np.full((4, 4), 300, dtype=dtype), bounds=(0, 0, 4, 4))
    b = write_raster(tmp_path / "b.tif", np.full((4, 4), 600, dtype=dtype), bounds=(4, 0, 8, 4))
    result = build_mosaic([a, b], tmp_path / "mosaic.vrt")
    with rasterio.open(result.path) as dataset:
        assert dataset.dtypes[0] == dtype
        data = dataset.read(1)
    assert data[0, 0] == 300
    assert data[0, 7] == 600


def test_build_mosaic_requires_sources(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="At least one"):
        build_mosaic([], tmp_path / "mosaic.vrt")


def test_build_mosaic_rejects_unknown_method(tmp_path: Path) -> None:
    a, b = _pair(tmp_path, 1, 2)
    with pytest.raises(ConfigurationError, match="method"):
        build_mosaic([a, b], tmp_path / "mosaic.vrt", method="max")


def test_build_mosaic_rejects_crs_mismatch(tmp_path: Path) -> None:
    a = write_raster(tmp_path / "a.tif", np.ones((2, 2), dtype="uint8"), bounds=(0, 0, 2, 2))
    b = write_raster(
        tmp_path / "b.tif",
        np.ones((2, 2), dtype="uint8"),
        bounds=(2, 0, 4, 2),
        crs="EPSG:32634",
    )
    output = tmp_path / "mosaic.vrt"
    with pytest.raises(ConfigurationError, match="same CRS"):
        build_mosaic([a, b], output)
    assert not output.exists()


def test_build_mosaic_rejects_resolution_mismatch(tmp_path: Path) -> None:
    a = write_raster(tmp_path / "a.tif", np.ones((2, 2), dtype="uint8"), bounds=(0, 0, 2, 2))
    b = write_raster(tmp_path / "b.tif", np.ones((4, 4), dtype="uint8"), bounds=(2, 0, 4, 2))
    with pytest.raises(ConfigurationError, match="resolution"):
        build_mosaic([a, b], tmp_path / "mosaic.vrt")


def test_build_mosaic_rejects_band_mismatch(tmp_path: Path) -> None:
    a = write_raster(tmp_path / "a.tif", np.ones((2, 2), dtype="uint8"), bounds=(0, 0, 2, 2))
    b = write_raster(tmp_path / "b.tif", np.ones((3, 2, 2), dtype="uint8"), bounds=(2, 0, 4, 2))
    with pytest.raises(ConfigurationError, match="band count"):
        build_mosaic([a, b], tmp_path / "mosaic.vrt")


def test_build_mosaic_rejects_misaligned_sources(tmp_path: Path) -> None:
    a = write_raster(tmp_path / "a.tif", np.ones((2, 2), dtype="uint8"), bounds=(0, 0, 2, 2))
    b = write_raster(
        tmp_path / "b.tif", np.ones((2, 2), dtype="uint8"), bounds=(2.5, 0, 4.5, 2)
    )
    with pytest.raises(ConfigurationError, match="not aligned"):
        build_mosaic([a, b], tmp_path / "mosaic.vrt")
