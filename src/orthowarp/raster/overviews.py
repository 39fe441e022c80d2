"""Overview pyramid generation for warped output."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import rasterio
from rasterio.enums import Resampling

from orthowarp.raster.errors import ConfigurationError
from orthowarp.raster.kernels import get_kernel
from orthowarp.raster.models import OverviewResult

LOGGER = logging.getLogger(__name__)

# Kernel names map one-to-one to GDAL overview resamplers.
_RESAMPLING = {
    "nearest": Resampling.nearest,
    "bilinear": Resampling.bilinear,
    "cubic": Resampling.cubic,
    "lanczos": Resampling.lanczos,
}


def overview_factors(width: int, height: int, min_size: int = 256) -> list[int]:
    """Return powers of two halving the raster until it fits in ``min_size``."""
    factors: list[int] = []
    factor = 2
    while max(width, height) / (factor // 2) > min_size:
        factors.append(factor)
        factor *= 2
    return factors


def build_overviews(
    path: Path,
    *,
    resampling: str = "lanczos",
    factors: Sequence[int] | None = None,
    min_size: int = 256,
) -> OverviewResult:
    """Build internal overviews in place using the warp's kernel.

    Only the overview levels are written; base pixels are left untouched.
    Existing levels with the same factors are regenerated, so repeated runs
    produce the same overview data.
    """
    kernel = get_kernel(resampling)
    with rasterio.open(path, "r+") as dataset:
        levels = list(factors) if factors is not None else overview_factors(
            dataset.width, dataset.height, min_size
        )
        for factor in levels:
            if factor < 2 or factor & (factor - 1):
                raise ConfigurationError(f"Overview factors must be powers of two, got {factor}")
        if levels:
            dataset.build_overviews(levels, _RESAMPLING[kernel.name])
            dataset.update_tags(ns="rio_overview", resampling=kernel.name)
            LOGGER.info(
                "Built %s overview level(s) for %s with %s.",
                len(levels),
                path,
                kernel.name,
            )
        else:
            LOGGER.debug("No overview levels needed for %s.", path)
    return OverviewResult(path=path, factors=tuple(levels), resampling=kernel.name)
