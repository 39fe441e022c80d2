"""Data models used by raster processing utilities."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

from rasterio.transform import from_origin

Bounds = Tuple[float, float, float, float]
Resolution = Tuple[float, float]


@dataclass(frozen=True)
class RasterInfo:
    """Metadata extracted from a raster file."""

    path: Path
    crs: str | None
    bounds: Bounds
    width: int
    height: int
    count: int
    nodata: float | None
    resolution: Resolution
    dtype: str


@dataclass(frozen=True)
class MosaicResult:
    """Result of building a mosaic from multiple rasters."""

    path: Path
    crs: str
    bounds: Bounds
    resolution: Resolution
    count: int
    sources: tuple[Path, ...] = ()


@dataclass(frozen=True)
class MaskResult:
    """Result of burning a coverage into an alpha raster."""

    path: Path
    crs: str
    bounds: Bounds
    resolution: Resolution
    width: int
    height: int
    inside_value: int
    outside_value: int
    healed: int = 0


@dataclass(frozen=True)
class WarpPlan:
    """Target grid of a reprojection, fixed before pixel work."""

    crs: str
    bounds: Bounds
    resolution: float
    width: int
    height: int
    block_size: int

    @property
    def transform(self):
        """Affine transform of the target grid."""
        return from_origin(self.bounds[0], self.bounds[3], self.resolution, self.resolution)

    def as_dict(self) -> dict[str, object]:
        return {
            "crs": self.crs,
            "bounds": list(self.bounds),
            "resolution": self.resolution,
            "width": self.width,
            "height": self.height,
            "block_size": self.block_size,
        }


@dataclass(frozen=True)
class WarpResult:
    """Result of warping a raster to a target CRS."""

    path: Path
    plan: WarpPlan
    complete: bool
    blocks_total: int
    blocks_done: int
    has_alpha: bool
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def crs(self) -> str:
        return self.plan.crs

    @property
    def bounds(self) -> Bounds:
        return self.plan.bounds


@dataclass(frozen=True)
class OverviewResult:
    """Result of building an overview pyramid."""

    path: Path
    factors: tuple[int, ...]
    resampling: str
