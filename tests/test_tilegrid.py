from __future__ import annotations

import pytest

from orthowarp.raster.errors import ConfigurationError
from orthowarp.raster.tilegrid import (
    HALF_CIRCUMFERENCE,
    aligned_grid,
    grid_shape,
    iter_blocks,
    resolution_for_zoom,
    snap_bounds,
    validate_block_size,
    xyz_tile_bounds,
    xyz_tiles_for_bounds,
    zoom_for_resolution,
)


def test_resolution_for_zoom_matches_web_mercator() -> None:
    assert resolution_for_zoom(0) == pytest.approx(156543.03392804097)
    assert resolution_for_zoom(20) == pytest.approx(0.14929107082380833)
    assert resolution_for_zoom(1, tile_size=512) == pytest.approx(resolution_for_zoom(2))


@pytest.mark.parametrize("zoom", [-1, 31, 2.5, True])
def test_resolution_for_zoom_rejects_bad_levels(zoom) -> None:
    with pytest.raises(ConfigurationError):
        resolution_for_zoom(zoom)


def test_zoom_for_resolution_inverts_levels() -> None:
    for zoom in (0, 7, 18, 30):
        assert zoom_for_resolution(resolution_for_zoom(zoom)) == zoom


def test_snap_bounds_snaps_outward() -> None:
    assert snap_bounds((0.3, 0.2, 9.7, 9.9), 1.0) == (0.0, 0.0, 10.0, 10.0)
    assert snap_bounds((-2.5, -0.5, -1.5, 0.5), 1.0) == (-3.0, -1.0, -1.0, 1.0)


def test_snap_bounds_tolerates_float_noise() -> None:
    left, _, right, _ = snap_bounds((0.1 * 3, 0.0, 0.1 * 7, 1.0), 0.1)
    assert left == pytest.approx(0.3)
    assert right == pytest.approx(0.7)


def test_snap_bounds_respects_origin() -> None:
    snapped = snap_bounds((10.2, 20.2, 11.9, 21.1), 0.5, origin=(0.25, 0.25))
    assert snapped == (9.75, 19.75, 12.25, 21.25)


def test_grid_shape_is_exact_for_snapped_bounds() -> None:
    for zoom in range(10, 23):
        res = resolution_for_zoom(zoom)
        bounds = snap_bounds((1_668_512.37, 6_380_000.11, 1_669_501.93, 6_381_022.49), res)
        width, height = grid_shape(bounds, res)
        assert width == round((bounds[2] - bounds[0]) / res)
        assert height == round((bounds[3] - bounds[1]) / res)
        assert bounds[0] + width * res == pytest.approx(bounds[2], abs=1e-6)
        for value in bounds:
            assert abs(value / res - round(value / res)) < 1e-6


def test_grid_shape_rejects_empty_bounds() -> None:
    with pytest.raises(ConfigurationError):
        grid_shape((0.0, 0.0, 0.0, 10.0), 1.0)


def test_aligned_grid_without_target_alignment_keeps_origin() -> None:
    bounds, width, height = aligned_grid((0.3, 0.2, 9.7, 9.9), 1.0, target_aligned=False)
    assert bounds[0] == 0.3
    assert bounds[3] == 9.9
    assert (width, height) == (10, 10)


def test_xyz_tile_bounds() -> None:
    assert xyz_tile_bounds(0, 0, 0) == pytest.approx(
        (-HALF_CIRCUMFERENCE, -HALF_CIRCUMFERENCE, HALF_CIRCUMFERENCE, HALF_CIRCUMFERENCE)
    )
    assert xyz_tile_bounds(1, 0, 1) == pytest.approx(
        (0.0, 0.0, HALF_CIRCUMFERENCE, HALF_CIRCUMFERENCE), abs=1e-6
    )


def test_xyz_tiles_for_bounds() -> None:
    world = (-HALF_CIRCUMFERENCE, -HALF_CIRCUMFERENCE, HALF_CIRCUMFERENCE, HALF_CIRCUMFERENCE)
    assert len(xyz_tiles_for_bounds(world, 1)) == 4
    tiles = xyz_tiles_for_bounds((1.0, 1.0, 2.0, 2.0), 3)
    assert tiles == [(3, 4, 3)]
    left, bottom, right, top = xyz_tile_bounds(4, 3, 3)
    assert left <= 1.0 < right and bottom <= 2.0 < top


def test_iter_blocks_covers_grid_once() -> None:
    blocks = list(iter_blocks(1000, 600, 512))
    assert [bid for bid, _ in blocks] == ["r0_c0", "r0_c512", "r512_c0", "r512_c512"]
    area = sum(int(window.width) * int(window.height) for _, window in blocks)
    assert area == 1000 * 600
    assert int(blocks[-1][1].width) == 488
    assert int(blocks[-1][1].height) == 88


@pytest.mark.parametrize("size", [0, 100, -16])
def test_validate_block_size(size: int) -> None:
    with pytest.raises(ConfigurationError, match="multiple of 16"):
        validate_block_size(size)


def test_validate_block_size_accepts_multiples_of_16() -> None:
    assert validate_block_size(256) == 256
    assert validate_block_size(16) == 16
